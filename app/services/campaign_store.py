import operator
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import and_, func, insert, or_, select, true, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import ensure_utc
from app.core.errors import InvalidRule, QueryFailed
from app.models.campaign import Campaign, CampaignStatus, CommunicationLog, DeliveryStatus, Segment
from app.models.customer import Customer
from app.services.rule_compiler import Comparison, Conjunction, Disjunction, MatchAll, Predicate


@dataclass(frozen=True)
class CustomerRecord:
    id: str
    external_id: str
    name: str
    email: str | None
    phone: str | None
    total_spend: Decimal
    visit_count: int
    last_purchase_at: datetime | None


@dataclass(frozen=True)
class SegmentRecord:
    id: str
    owner_user_id: str
    name: str
    rules_json: dict[str, Any]
    audience_size: int


@dataclass(frozen=True)
class CampaignRecord:
    id: str
    owner_user_id: str
    segment_id: str
    name: str
    message_template: str
    status: CampaignStatus
    scheduled_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    total_audience: int
    sent_count: int
    failed_count: int
    success_rate: float
    ai_summary: str | None
    failure_reason: str | None


@dataclass(frozen=True)
class LogEntryRecord:
    id: str
    campaign_id: str
    recipient_id: str
    rendered_message: str
    status: DeliveryStatus
    attempts: int
    last_attempt_at: datetime | None
    failure_reason: str | None
    vendor_correlation_id: str | None


@dataclass(frozen=True)
class PendingEntry:
    id: str
    campaign_id: str
    recipient_id: str
    rendered_message: str


@dataclass(frozen=True)
class DeliveryResult:
    entry_id: str
    status: DeliveryStatus
    attempted_at: datetime
    failure_reason: str | None
    correlation_id: str | None


@dataclass(frozen=True)
class CampaignStats:
    total_audience: int
    sent: int
    failed: int
    success_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_audience": self.total_audience,
            "sent": self.sent,
            "failed": self.failed,
            "success_rate": self.success_rate,
        }


def success_rate_for(sent: int, total_audience: int) -> float:
    if total_audience <= 0:
        return 0.0
    return round((sent / total_audience) * 100, 2)


def stats_from_counts(counts: dict[DeliveryStatus, int], *, total_audience: int) -> CampaignStats:
    sent = counts.get(DeliveryStatus.SENT, 0)
    failed = counts.get(DeliveryStatus.FAILED, 0)
    return CampaignStats(
        total_audience=total_audience,
        sent=sent,
        failed=failed,
        success_rate=success_rate_for(sent, total_audience),
    )


class CampaignStore(Protocol):
    def find_customers(self, predicate: Predicate) -> list[CustomerRecord]:
        ...

    def count_customers(self, predicate: Predicate) -> int:
        ...

    def get_segment(self, segment_id: str) -> SegmentRecord | None:
        ...

    def create_campaign(
        self,
        *,
        campaign_id: str,
        owner_user_id: str,
        segment_id: str,
        name: str,
        message_template: str,
        scheduled_at: datetime | None,
        total_audience: int,
    ) -> CampaignRecord:
        ...

    def get_campaign(self, campaign_id: str) -> CampaignRecord | None:
        ...

    def find_campaigns_due(self, now: datetime) -> list[CampaignRecord]:
        ...

    def transition_campaign(
        self,
        campaign_id: str,
        *,
        from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> bool:
        ...

    def update_campaign_stats(self, campaign_id: str, stats: CampaignStats) -> None:
        ...

    def insert_pending_entries(self, entries: list[PendingEntry]) -> list[PendingEntry]:
        ...

    def record_outcomes(self, results: list[DeliveryResult]) -> None:
        ...

    def find_log_entry_by_correlation_id(self, correlation_id: str) -> LogEntryRecord | None:
        ...

    def update_log_entry(
        self,
        entry_id: str,
        *,
        status: DeliveryStatus,
        failure_reason: str | None,
        last_attempt_at: datetime,
    ) -> bool:
        ...

    def count_by_status(self, campaign_id: str) -> dict[DeliveryStatus, int]:
        ...

    def refresh_campaign_stats(self, campaign_id: str) -> CampaignStats:
        ...


_CUSTOMER_COLUMNS = {
    "total_spend": Customer.total_spend,
    "visit_count": Customer.visit_count,
    "last_purchase_at": Customer.last_purchase_at,
}

_SQL_OPERATORS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


def predicate_to_clause(predicate: Predicate):
    if isinstance(predicate, MatchAll):
        return true()
    if isinstance(predicate, Conjunction):
        return and_(*[predicate_to_clause(item) for item in predicate.operands])
    if isinstance(predicate, Disjunction):
        return or_(*[predicate_to_clause(item) for item in predicate.operands])
    if isinstance(predicate, Comparison):
        column = _CUSTOMER_COLUMNS.get(predicate.attribute)
        compare = _SQL_OPERATORS.get(predicate.operator)
        if column is None or compare is None:
            raise InvalidRule(f"Cannot query {predicate.attribute} {predicate.operator}")
        return compare(column, predicate.value)
    raise InvalidRule(f"Unsupported predicate {type(predicate).__name__}")


def _customer_record(row: Customer) -> CustomerRecord:
    return CustomerRecord(
        id=row.id,
        external_id=row.external_id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        total_spend=Decimal(str(row.total_spend or 0)),
        visit_count=int(row.visit_count or 0),
        last_purchase_at=ensure_utc(row.last_purchase_at),
    )


def _segment_record(row: Segment) -> SegmentRecord:
    return SegmentRecord(
        id=row.id,
        owner_user_id=row.owner_user_id,
        name=row.name,
        rules_json=row.rules_json or {},
        audience_size=int(row.audience_size or 0),
    )


def campaign_record(row: Campaign) -> CampaignRecord:
    return CampaignRecord(
        id=row.id,
        owner_user_id=row.owner_user_id,
        segment_id=row.segment_id,
        name=row.name,
        message_template=row.message_template,
        status=CampaignStatus(row.status),
        scheduled_at=ensure_utc(row.scheduled_at),
        started_at=ensure_utc(row.started_at),
        completed_at=ensure_utc(row.completed_at),
        total_audience=int(row.total_audience or 0),
        sent_count=int(row.sent_count or 0),
        failed_count=int(row.failed_count or 0),
        success_rate=float(row.success_rate or 0.0),
        ai_summary=row.ai_summary,
        failure_reason=row.failure_reason,
    )


def _log_entry_record(row: CommunicationLog) -> LogEntryRecord:
    return LogEntryRecord(
        id=row.id,
        campaign_id=row.campaign_id,
        recipient_id=row.recipient_id,
        rendered_message=row.rendered_message,
        status=DeliveryStatus(row.status),
        attempts=int(row.attempts or 0),
        last_attempt_at=ensure_utc(row.last_attempt_at),
        failure_reason=row.failure_reason,
        vendor_correlation_id=row.vendor_correlation_id,
    )


class SqlAlchemyCampaignStore:
    """Campaign store backed by the SQLAlchemy models.

    Every method runs in its own short session so the store is safe to share
    between the API, the scheduler thread and dispatch runs.
    """

    def __init__(self, session_factory: sessionmaker, *, page_size: int = 500):
        self._session_factory = session_factory
        self.page_size = page_size

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise QueryFailed(f"Storage query failed: {exc.__class__.__name__}: {exc}") from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def find_customers(self, predicate: Predicate) -> list[CustomerRecord]:
        clause = predicate_to_clause(predicate)
        records: list[CustomerRecord] = []
        seen: set[str] = set()
        last_id: str | None = None
        with self._session() as db:
            while True:
                stmt = select(Customer).where(clause).order_by(Customer.id).limit(self.page_size)
                if last_id is not None:
                    stmt = stmt.where(Customer.id > last_id)
                rows = db.execute(stmt).scalars().all()
                for row in rows:
                    if row.id in seen:
                        continue
                    seen.add(row.id)
                    records.append(_customer_record(row))
                if len(rows) < self.page_size:
                    break
                last_id = rows[-1].id
        return records

    def count_customers(self, predicate: Predicate) -> int:
        clause = predicate_to_clause(predicate)
        with self._session() as db:
            return int(db.execute(select(func.count(Customer.id)).where(clause)).scalar_one())

    def get_segment(self, segment_id: str) -> SegmentRecord | None:
        with self._session() as db:
            row = db.get(Segment, segment_id)
            return _segment_record(row) if row else None

    def create_campaign(
        self,
        *,
        campaign_id: str,
        owner_user_id: str,
        segment_id: str,
        name: str,
        message_template: str,
        scheduled_at: datetime | None,
        total_audience: int,
    ) -> CampaignRecord:
        with self._session() as db:
            row = Campaign(
                id=campaign_id,
                owner_user_id=owner_user_id,
                segment_id=segment_id,
                name=name,
                message_template=message_template,
                status=CampaignStatus.DRAFT.value,
                scheduled_at=ensure_utc(scheduled_at),
                total_audience=total_audience,
                sent_count=0,
                failed_count=0,
                success_rate=0.0,
            )
            db.add(row)
            db.flush()
            return campaign_record(row)

    def get_campaign(self, campaign_id: str) -> CampaignRecord | None:
        with self._session() as db:
            row = db.get(Campaign, campaign_id)
            return campaign_record(row) if row else None

    def find_campaigns_due(self, now: datetime) -> list[CampaignRecord]:
        with self._session() as db:
            rows = db.execute(
                select(Campaign)
                .where(
                    Campaign.status == CampaignStatus.SCHEDULED.value,
                    Campaign.scheduled_at.is_not(None),
                    Campaign.scheduled_at <= ensure_utc(now),
                )
                .order_by(Campaign.scheduled_at, Campaign.id)
            ).scalars().all()
            return [campaign_record(row) for row in rows]

    def transition_campaign(
        self,
        campaign_id: str,
        *,
        from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> bool:
        expected = [status.value for status in from_statuses]
        with self._session() as db:
            result = db.execute(
                update(Campaign)
                .where(Campaign.id == campaign_id, Campaign.status.in_(expected))
                .values(status=to_status.value, **fields)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def update_campaign_stats(self, campaign_id: str, stats: CampaignStats) -> None:
        with self._session() as db:
            db.execute(
                update(Campaign)
                .where(Campaign.id == campaign_id)
                .values(
                    total_audience=stats.total_audience,
                    sent_count=stats.sent,
                    failed_count=stats.failed,
                    success_rate=stats.success_rate,
                )
                .execution_options(synchronize_session=False)
            )

    def insert_pending_entries(self, entries: list[PendingEntry]) -> list[PendingEntry]:
        """Insert PENDING rows, silently skipping recipients that already have one.

        Returns the entries this call actually created; only those may be sent.
        """
        unique: dict[tuple[str, str], PendingEntry] = {}
        for entry in entries:
            unique.setdefault((entry.campaign_id, entry.recipient_id), entry)
        if not unique:
            return []
        rows = [
            {
                "id": entry.id,
                "campaign_id": entry.campaign_id,
                "recipient_id": entry.recipient_id,
                "rendered_message": entry.rendered_message,
                "status": DeliveryStatus.PENDING.value,
                "attempts": 0,
            }
            for entry in unique.values()
        ]
        ids = [row["id"] for row in rows]
        with self._session() as db:
            db.execute(_insert_ignoring_conflicts(db, rows))
            created = set(
                db.execute(select(CommunicationLog.id).where(CommunicationLog.id.in_(ids))).scalars().all()
            )
        return [entry for entry in unique.values() if entry.id in created]

    def record_outcomes(self, results: list[DeliveryResult]) -> None:
        if not results:
            return
        with self._session() as db:
            for result in results:
                # Write-once: only the pipeline's own PENDING row is finalized here.
                db.execute(
                    update(CommunicationLog)
                    .where(
                        CommunicationLog.id == result.entry_id,
                        CommunicationLog.status == DeliveryStatus.PENDING.value,
                    )
                    .values(
                        status=result.status.value,
                        attempts=CommunicationLog.attempts + 1,
                        last_attempt_at=ensure_utc(result.attempted_at),
                        failure_reason=result.failure_reason[:255] if result.failure_reason else None,
                        vendor_correlation_id=result.correlation_id,
                    )
                    .execution_options(synchronize_session=False)
                )

    def find_log_entry_by_correlation_id(self, correlation_id: str) -> LogEntryRecord | None:
        with self._session() as db:
            row = db.execute(
                select(CommunicationLog).where(CommunicationLog.vendor_correlation_id == correlation_id)
            ).scalar_one_or_none()
            return _log_entry_record(row) if row else None

    def update_log_entry(
        self,
        entry_id: str,
        *,
        status: DeliveryStatus,
        failure_reason: str | None,
        last_attempt_at: datetime,
    ) -> bool:
        """Apply a delivery outcome unless a newer one is already recorded."""
        occurred_at = ensure_utc(last_attempt_at)
        with self._session() as db:
            result = db.execute(
                update(CommunicationLog)
                .where(
                    CommunicationLog.id == entry_id,
                    or_(
                        CommunicationLog.last_attempt_at.is_(None),
                        CommunicationLog.last_attempt_at <= occurred_at,
                    ),
                )
                .values(
                    status=status.value,
                    failure_reason=failure_reason[:255] if failure_reason else None,
                    last_attempt_at=occurred_at,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def count_by_status(self, campaign_id: str) -> dict[DeliveryStatus, int]:
        with self._session() as db:
            rows = db.execute(
                select(CommunicationLog.status, func.count(CommunicationLog.id))
                .where(CommunicationLog.campaign_id == campaign_id)
                .group_by(CommunicationLog.status)
            ).all()
        return {DeliveryStatus(status): int(count) for status, count in rows}

    def refresh_campaign_stats(self, campaign_id: str) -> CampaignStats:
        campaign = self.get_campaign(campaign_id)
        total_audience = campaign.total_audience if campaign else 0
        stats = stats_from_counts(self.count_by_status(campaign_id), total_audience=total_audience)
        if campaign:
            self.update_campaign_stats(campaign_id, stats)
        return stats


def _insert_ignoring_conflicts(db: Session, rows: list[dict[str, Any]]):
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(CommunicationLog).values(rows).on_conflict_do_nothing()
    if dialect == "postgresql":
        return postgresql.insert(CommunicationLog).values(rows).on_conflict_do_nothing()
    # Other backends rely on the unique constraint and fail loudly on overlap.
    return insert(CommunicationLog).values(rows)
