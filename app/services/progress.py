import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.core.clock import Clock, utc_now
from app.core.errors import CampaignNotFound
from app.models.campaign import TERMINAL_CAMPAIGN_STATUSES, CampaignStatus, DeliveryStatus
from app.services.campaign_store import CampaignStore

_PRE_DISPATCH_STATUSES = frozenset({CampaignStatus.DRAFT, CampaignStatus.SCHEDULED})


@dataclass(frozen=True)
class ProgressSnapshot:
    campaign_id: str
    status: CampaignStatus
    total: int
    sent: int
    failed: int
    pending: int
    progress_pct: float
    is_complete: bool
    generated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "status": self.status.value,
            "total": self.total,
            "sent": self.sent,
            "failed": self.failed,
            "pending": self.pending,
            "progress_pct": self.progress_pct,
            "is_complete": self.is_complete,
            "generated_at": self.generated_at.isoformat(),
        }


def progress_percent(processed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round((processed / total) * 100, 2)


class ProgressProjector:
    """Read-only view of a campaign's delivery progress."""

    def __init__(self, store: CampaignStore, *, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    def snapshot(self, campaign_id: str) -> ProgressSnapshot:
        campaign = self.store.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFound(campaign_id)
        counts = self.store.count_by_status(campaign_id)
        sent = counts.get(DeliveryStatus.SENT, 0)
        failed = counts.get(DeliveryStatus.FAILED, 0)
        total = campaign.total_audience
        processed = sent + failed
        is_complete = campaign.status in TERMINAL_CAMPAIGN_STATUSES or (
            campaign.status not in _PRE_DISPATCH_STATUSES and processed >= total
        )
        return ProgressSnapshot(
            campaign_id=campaign.id,
            status=campaign.status,
            total=total,
            sent=sent,
            failed=failed,
            pending=max(total - processed, 0),
            progress_pct=progress_percent(processed, total),
            is_complete=is_complete,
            generated_at=self.clock(),
        )

    def iter_progress(
        self,
        campaign_id: str,
        *,
        poll_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[ProgressSnapshot]:
        """Yield snapshots every ``poll_seconds`` until the campaign completes.

        The first complete snapshot is always the last one yielded.
        """
        while True:
            current = self.snapshot(campaign_id)
            yield current
            if current.is_complete:
                return
            sleep(poll_seconds)
