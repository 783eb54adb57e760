import json
import logging
from collections.abc import Callable
from datetime import datetime

from app.core.clock import Clock, utc_now
from app.core.errors import (
    CampaignNotFound,
    DoubleDispatchRejected,
    IllegalTransition,
    InvalidRule,
    QueryFailed,
    SegmentNotFound,
)
from app.core.id_utils import generate_shortuuid
from app.models.campaign import CampaignStatus
from app.services.audience_resolver import AudienceResolver
from app.services.campaign_store import CampaignRecord, CampaignStats, CampaignStore
from app.services.delivery_pipeline import DeliveryPipeline
from app.services.text_generation import SUMMARY_FALLBACK, TextGenerator

logger = logging.getLogger("campaigns.engine")

TRANSITIONS: dict[CampaignStatus, frozenset[CampaignStatus]] = {
    CampaignStatus.DRAFT: frozenset({CampaignStatus.SCHEDULED, CampaignStatus.RUNNING}),
    CampaignStatus.SCHEDULED: frozenset({CampaignStatus.IN_PROGRESS}),
    CampaignStatus.RUNNING: frozenset({CampaignStatus.IN_PROGRESS}),
    CampaignStatus.IN_PROGRESS: frozenset({CampaignStatus.COMPLETED, CampaignStatus.FAILED}),
    CampaignStatus.COMPLETED: frozenset(),
    CampaignStatus.FAILED: frozenset(),
}

_AUDIENCE_ERRORS = (SegmentNotFound, QueryFailed, InvalidRule)


def can_transition(from_status: CampaignStatus, to_status: CampaignStatus) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Campaign dispatch failed"
    return text[:255]


def _log_event(event: str, **fields) -> None:
    logger.info(json.dumps({"event": event, **fields}, default=str))


class CampaignLifecycle:
    """Owns campaign status transitions and drives dispatch.

    Every status change is checked against ``TRANSITIONS`` and written as a
    compare-and-set, so the claim into IN_PROGRESS is the single gate that
    decides which trigger delivers a campaign.
    """

    def __init__(
        self,
        store: CampaignStore,
        resolver: AudienceResolver,
        pipeline: DeliveryPipeline,
        text_generator: TextGenerator,
        *,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = generate_shortuuid,
    ):
        self.store = store
        self.resolver = resolver
        self.pipeline = pipeline
        self.text_generator = text_generator
        self.clock = clock
        self.id_factory = id_factory

    def create_campaign(
        self,
        *,
        owner_user_id: str,
        segment_id: str,
        name: str,
        message_template: str,
        scheduled_at: datetime | None = None,
        launch: bool = True,
    ) -> CampaignRecord:
        segment = self.store.get_segment(segment_id)
        if segment is None or segment.owner_user_id != owner_user_id:
            raise SegmentNotFound(segment_id)

        campaign = self.store.create_campaign(
            campaign_id=self.id_factory(),
            owner_user_id=owner_user_id,
            segment_id=segment.id,
            name=name,
            message_template=message_template,
            scheduled_at=scheduled_at,
            total_audience=self.resolver.audience_size(segment.rules_json),
        )
        _log_event("campaign_created", campaign_id=campaign.id, segment_id=segment.id)
        if launch:
            return self.launch(campaign.id)
        return campaign

    def launch(self, campaign_id: str) -> CampaignRecord:
        campaign = self.get(campaign_id)
        now = self.clock()
        if campaign.scheduled_at is not None and campaign.scheduled_at > now:
            self._transition(campaign, CampaignStatus.SCHEDULED)
            return self.get(campaign_id)

        self._transition(campaign, CampaignStatus.RUNNING)
        claimed = self.claim(campaign_id, CampaignStatus.RUNNING)
        return self.run(claimed)

    def claim(self, campaign_id: str, from_status: CampaignStatus) -> CampaignRecord:
        if not can_transition(from_status, CampaignStatus.IN_PROGRESS):
            raise IllegalTransition(
                campaign_id,
                from_status=from_status.value,
                to_status=CampaignStatus.IN_PROGRESS.value,
            )
        claimed = self.store.transition_campaign(
            campaign_id,
            from_statuses=[from_status],
            to_status=CampaignStatus.IN_PROGRESS,
            started_at=self.clock(),
        )
        if not claimed:
            raise DoubleDispatchRejected(campaign_id, expected_status=from_status.value)
        _log_event("campaign_claimed", campaign_id=campaign_id, from_status=from_status.value)
        return self.get(campaign_id)

    def run(self, campaign: CampaignRecord) -> CampaignRecord:
        try:
            stats = self.pipeline.dispatch(campaign)
        except _AUDIENCE_ERRORS as exc:
            self._fail(campaign, exc.message)
            return self.get(campaign.id)
        except Exception as exc:
            self._fail(campaign, _short_error(exc))
            raise

        ai_summary = self._summarize(campaign, stats) if stats.total_audience > 0 else None
        self._transition(
            campaign,
            CampaignStatus.COMPLETED,
            completed_at=self.clock(),
            ai_summary=ai_summary,
        )
        _log_event("campaign_completed", campaign_id=campaign.id, **stats.to_dict())
        return self.get(campaign.id)

    def dispatch_scheduled(self, campaign_id: str) -> CampaignRecord:
        return self.run(self.claim(campaign_id, CampaignStatus.SCHEDULED))

    def get(self, campaign_id: str) -> CampaignRecord:
        campaign = self.store.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFound(campaign_id)
        return campaign

    def _transition(self, campaign: CampaignRecord, to_status: CampaignStatus, **fields) -> None:
        if not can_transition(campaign.status, to_status):
            raise IllegalTransition(campaign.id, from_status=campaign.status.value, to_status=to_status.value)
        changed = self.store.transition_campaign(
            campaign.id,
            from_statuses=[campaign.status],
            to_status=to_status,
            **fields,
        )
        if not changed:
            # Another caller moved the campaign between our read and the write.
            raise DoubleDispatchRejected(campaign.id, expected_status=campaign.status.value)
        _log_event(
            "campaign_transition",
            campaign_id=campaign.id,
            from_status=campaign.status.value,
            to_status=to_status.value,
        )

    def _fail(self, campaign: CampaignRecord, reason: str) -> None:
        try:
            self.store.refresh_campaign_stats(campaign.id)
        except QueryFailed as exc:
            _log_event("campaign_stats_refresh_failed", campaign_id=campaign.id, error=exc.message)
        self._transition(
            campaign,
            CampaignStatus.FAILED,
            completed_at=self.clock(),
            failure_reason=_short_error(reason),
        )
        logger.warning(json.dumps({"event": "campaign_failed", "campaign_id": campaign.id, "reason": reason}))

    def _summarize(self, campaign: CampaignRecord, stats: CampaignStats) -> str:
        try:
            return self.text_generator.summarize(stats, campaign_name=campaign.name)
        except Exception as exc:  # noqa: BLE001
            _log_event("campaign_summary_failed", campaign_id=campaign.id, error=_short_error(exc))
            return SUMMARY_FALLBACK
