import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from app.core.clock import ensure_utc
from app.core.errors import CampaignEngineError, UnknownReceipt
from app.models.campaign import TERMINAL_CAMPAIGN_STATUSES, DeliveryStatus
from app.services.campaign_store import CampaignStore, LogEntryRecord

logger = logging.getLogger("campaigns.engine")

DEFAULT_FAILURE_REASON = "Delivery failed"


@dataclass(frozen=True)
class Receipt:
    correlation_id: str
    status: DeliveryStatus
    occurred_at: datetime
    error_reason: str | None = None


@dataclass(frozen=True)
class ReceiptResult:
    correlation_id: str
    ok: bool
    entry: LogEntryRecord | None = None
    error: str | None = None


class ReceiptReconciler:
    """Applies vendor delivery receipts to communication log entries.

    Receipts are ordered by ``occurred_at``: an entry only moves when the receipt
    is at least as new as the entry's last recorded attempt, so replays and late
    arrivals are harmless.
    """

    def __init__(self, store: CampaignStore):
        self.store = store

    def apply(self, receipt: Receipt) -> LogEntryRecord:
        status = DeliveryStatus(receipt.status)
        if status == DeliveryStatus.PENDING:
            raise ValueError("Receipt status must be SENT or FAILED")
        occurred_at = ensure_utc(receipt.occurred_at)

        entry = self.store.find_log_entry_by_correlation_id(receipt.correlation_id)
        if entry is None:
            raise UnknownReceipt(receipt.correlation_id)

        failure_reason = None
        if status == DeliveryStatus.FAILED:
            failure_reason = (receipt.error_reason or "").strip()[:255] or DEFAULT_FAILURE_REASON

        changed = self.store.update_log_entry(
            entry.id,
            status=status,
            failure_reason=failure_reason,
            last_attempt_at=occurred_at,
        )
        logger.info(
            json.dumps(
                {
                    "event": "receipt_applied" if changed else "receipt_ignored_stale",
                    "correlation_id": receipt.correlation_id,
                    "campaign_id": entry.campaign_id,
                    "status": status.value,
                }
            )
        )
        if changed:
            campaign = self.store.get_campaign(entry.campaign_id)
            if campaign is not None and campaign.status in TERMINAL_CAMPAIGN_STATUSES:
                self.store.refresh_campaign_stats(campaign.id)

        current = self.store.find_log_entry_by_correlation_id(receipt.correlation_id)
        return current or entry

    def apply_batch(self, receipts: Iterable[Receipt]) -> list[ReceiptResult]:
        results: list[ReceiptResult] = []
        for receipt in receipts:
            try:
                entry = self.apply(receipt)
            except UnknownReceipt as exc:
                results.append(ReceiptResult(correlation_id=receipt.correlation_id, ok=False, error=exc.code))
            except (CampaignEngineError, ValueError) as exc:
                results.append(ReceiptResult(correlation_id=receipt.correlation_id, ok=False, error=str(exc)))
            else:
                results.append(ReceiptResult(correlation_id=receipt.correlation_id, ok=True, entry=entry))
        return results
