import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from app.core.clock import Clock, utc_now
from app.core.id_utils import generate_shortuuid
from app.models.campaign import DeliveryStatus
from app.services.audience_resolver import AudienceResolver
from app.services.campaign_store import (
    CampaignRecord,
    CampaignStats,
    CampaignStore,
    CustomerRecord,
    DeliveryResult,
    PendingEntry,
    stats_from_counts,
)
from app.services.vendor_gateway import SendAttempt, SendRequest, VendorGateway, send_batch

logger = logging.getLogger("campaigns.engine")

_TEMPLATE_VAR_RE = re.compile(r"{{\s*([a-zA-Z0-9_.]+)\s*}}")


def recipient_context(recipient: CustomerRecord) -> dict[str, Any]:
    last_purchase = recipient.last_purchase_at.isoformat() if recipient.last_purchase_at else None
    return {
        "id": recipient.id,
        "externalId": recipient.external_id,
        "name": recipient.name,
        "email": recipient.email,
        "phone": recipient.phone,
        "totalSpend": str(recipient.total_spend),
        "visitCount": recipient.visit_count,
        "lastPurchase": last_purchase,
        "external_id": recipient.external_id,
        "total_spend": str(recipient.total_spend),
        "visit_count": recipient.visit_count,
        "last_purchase": last_purchase,
    }


def render_message(template: str, context: dict[str, Any]) -> str:
    def _replace(match: re.Match[str]) -> str:
        resolved = context.get(match.group(1))
        if resolved is None:
            return ""
        if isinstance(resolved, (dict, list)):
            return json.dumps(resolved, ensure_ascii=True)
        return str(resolved)

    return _TEMPLATE_VAR_RE.sub(_replace, template)


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Delivery failed"
    return text[:255]


@dataclass(frozen=True)
class _PreparedEntry:
    entry: PendingEntry
    recipient: CustomerRecord
    render_error: str | None = None


class DeliveryPipeline:
    """Delivers one campaign to its audience in bounded, concurrent batches.

    Each batch first reserves PENDING log entries; only the entries this run
    created are sent, so overlapping runs never message a recipient twice.
    Outcomes are written once, after the batch's sends have all joined.
    """

    def __init__(
        self,
        store: CampaignStore,
        resolver: AudienceResolver,
        gateway: VendorGateway,
        *,
        batch_size: int = 50,
        max_workers: int = 10,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = generate_shortuuid,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.resolver = resolver
        self.gateway = gateway
        self.batch_size = batch_size
        self.max_workers = max(1, min(max_workers, batch_size))
        self.clock = clock
        self.id_factory = id_factory

    def dispatch(self, campaign: CampaignRecord) -> CampaignStats:
        recipients = self.resolver.resolve_segment(campaign.segment_id)
        total_audience = len(recipients)
        self.store.update_campaign_stats(
            campaign.id,
            stats_from_counts(self.store.count_by_status(campaign.id), total_audience=total_audience),
        )

        for start in range(0, total_audience, self.batch_size):
            batch = recipients[start : start + self.batch_size]
            self._deliver_batch(campaign, batch, batch_number=start // self.batch_size + 1)

        stats = stats_from_counts(self.store.count_by_status(campaign.id), total_audience=total_audience)
        self.store.update_campaign_stats(campaign.id, stats)
        return stats

    def _deliver_batch(self, campaign: CampaignRecord, recipients: list[CustomerRecord], *, batch_number: int) -> None:
        prepared = [self._prepare(campaign, recipient) for recipient in recipients]
        claimed = {entry.id for entry in self.store.insert_pending_entries([item.entry for item in prepared])}
        prepared = [item for item in prepared if item.entry.id in claimed]
        if not prepared:
            return

        requests = [
            SendRequest(key=item.entry.id, recipient=item.recipient, message=item.entry.rendered_message)
            for item in prepared
            if item.render_error is None
        ]
        attempts = {
            attempt.request.key: attempt
            for attempt in send_batch(self.gateway, requests, max_workers=self.max_workers, clock=self.clock)
        }

        # Entries that never reached the vendor take the batch completion time.
        batch_completed_at = self.clock()
        results = [self._result_for(item, attempts.get(item.entry.id), batch_completed_at) for item in prepared]
        self.store.record_outcomes(results)

        sent = sum(1 for result in results if result.status == DeliveryStatus.SENT)
        logger.info(
            json.dumps(
                {
                    "event": "delivery_batch_completed",
                    "campaign_id": campaign.id,
                    "batch": batch_number,
                    "size": len(results),
                    "sent": sent,
                    "failed": len(results) - sent,
                }
            )
        )

    def _prepare(self, campaign: CampaignRecord, recipient: CustomerRecord) -> _PreparedEntry:
        render_error = None
        try:
            message = render_message(campaign.message_template, recipient_context(recipient))
        except Exception as exc:  # noqa: BLE001
            message = ""
            render_error = _short_error(exc)
        entry = PendingEntry(
            id=self.id_factory(),
            campaign_id=campaign.id,
            recipient_id=recipient.id,
            rendered_message=message,
        )
        return _PreparedEntry(entry=entry, recipient=recipient, render_error=render_error)

    @staticmethod
    def _result_for(item: _PreparedEntry, attempt: SendAttempt | None, attempted_at) -> DeliveryResult:
        def _failed(reason: str, correlation_id: str | None = None) -> DeliveryResult:
            return DeliveryResult(
                entry_id=item.entry.id,
                status=DeliveryStatus.FAILED,
                attempted_at=attempted_at,
                failure_reason=_short_error(reason),
                correlation_id=correlation_id,
            )

        if item.render_error is not None:
            return _failed(item.render_error)
        if attempt is None:
            return _failed("Delivery was not attempted")
        attempted_at = attempt.attempted_at or attempted_at
        if attempt.error is not None:
            return _failed(attempt.error)
        outcome = attempt.outcome
        if outcome is None:
            return _failed("Vendor returned no outcome")
        if not outcome.accepted:
            return _failed(outcome.error_reason or "Vendor rejected message", outcome.correlation_id)
        return DeliveryResult(
            entry_id=item.entry.id,
            status=DeliveryStatus.SENT,
            attempted_at=attempted_at,
            failure_reason=None,
            correlation_id=outcome.correlation_id,
        )
