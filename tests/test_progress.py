from datetime import datetime, timezone

import pytest

from app.core.errors import CampaignNotFound
from app.models.campaign import CampaignStatus, DeliveryStatus
from app.services.campaign_store import DeliveryResult, PendingEntry, SqlAlchemyCampaignStore
from app.services.progress import ProgressProjector, progress_percent

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _store_with_campaign(session_local, add_segment, *, total_audience: int) -> SqlAlchemyCampaignStore:
    add_segment("seg-1", {"operator": "AND", "children": []})
    store = SqlAlchemyCampaignStore(session_local)
    store.create_campaign(
        campaign_id="camp-1",
        owner_user_id="operator-1",
        segment_id="seg-1",
        name="Progress",
        message_template="Hi",
        scheduled_at=None,
        total_audience=total_audience,
    )
    return store


def _deliver(store, recipient_ids, status):
    entries = [
        PendingEntry(id=f"log-{recipient_id}", campaign_id="camp-1", recipient_id=recipient_id, rendered_message="Hi")
        for recipient_id in recipient_ids
    ]
    store.insert_pending_entries(entries)
    store.record_outcomes(
        [
            DeliveryResult(entry_id=entry.id, status=status, attempted_at=NOW, failure_reason=None, correlation_id=None)
            for entry in entries
        ]
    )


def test_progress_percent():
    assert progress_percent(0, 0) == 0.0
    assert progress_percent(1, 3) == 33.33
    assert progress_percent(4, 4) == 100.0


def test_draft_snapshot_is_not_complete(session_local, add_segment):
    store = _store_with_campaign(session_local, add_segment, total_audience=0)

    snapshot = ProgressProjector(store, clock=lambda: NOW).snapshot("camp-1")

    assert snapshot.status == CampaignStatus.DRAFT
    assert snapshot.is_complete is False
    assert snapshot.to_dict()["generated_at"] == NOW.isoformat()


def test_in_progress_snapshot_counts_outcomes(session_local, add_customer, add_segment):
    for customer_id in ("a", "b", "c", "d"):
        add_customer(customer_id)
    store = _store_with_campaign(session_local, add_segment, total_audience=4)
    store.transition_campaign("camp-1", from_statuses=[CampaignStatus.DRAFT], to_status=CampaignStatus.IN_PROGRESS)
    _deliver(store, ["a", "b"], DeliveryStatus.SENT)
    _deliver(store, ["c"], DeliveryStatus.FAILED)
    projector = ProgressProjector(store, clock=lambda: NOW)

    snapshot = projector.snapshot("camp-1")

    assert (snapshot.sent, snapshot.failed, snapshot.pending) == (2, 1, 1)
    assert snapshot.progress_pct == 75.0
    assert snapshot.is_complete is False

    _deliver(store, ["d"], DeliveryStatus.SENT)
    assert projector.snapshot("camp-1").is_complete is True


def test_empty_running_campaign_is_complete(session_local, add_segment):
    store = _store_with_campaign(session_local, add_segment, total_audience=0)
    store.transition_campaign("camp-1", from_statuses=[CampaignStatus.DRAFT], to_status=CampaignStatus.IN_PROGRESS)

    snapshot = ProgressProjector(store).snapshot("camp-1")

    assert snapshot.is_complete is True
    assert snapshot.pending == 0


def test_iter_progress_stops_after_completion(session_local, add_segment):
    store = _store_with_campaign(session_local, add_segment, total_audience=5)
    store.transition_campaign("camp-1", from_statuses=[CampaignStatus.DRAFT], to_status=CampaignStatus.IN_PROGRESS)
    sleeps: list[float] = []

    def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 2:
            store.transition_campaign(
                "camp-1",
                from_statuses=[CampaignStatus.IN_PROGRESS],
                to_status=CampaignStatus.COMPLETED,
            )

    snapshots = list(ProgressProjector(store).iter_progress("camp-1", poll_seconds=0.5, sleep=fake_sleep))

    assert [snapshot.is_complete for snapshot in snapshots] == [False, False, True]
    assert snapshots[-1].status == CampaignStatus.COMPLETED
    assert sleeps == [0.5, 0.5]


def test_unknown_campaign_raises(session_local):
    with pytest.raises(CampaignNotFound):
        ProgressProjector(SqlAlchemyCampaignStore(session_local)).snapshot("missing")
