import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.clock import ensure_utc
from app.core.deps import get_current_user_id, get_db, get_engine
from app.core.errors import CampaignEngineError
from app.models.campaign import Campaign, CampaignStatus, CommunicationLog, DeliveryStatus, Segment
from app.models.customer import Customer
from app.schemas.campaign import (
    CampaignCreateIn,
    CampaignDetailOut,
    CampaignListOut,
    CampaignMetricsOut,
    CampaignOut,
    CommunicationLogListOut,
    CommunicationLogOut,
    ProgressOut,
)
from app.schemas.common import page_meta
from app.services.engine import CampaignEngine
from app.services.progress import ProgressSnapshot

router = APIRouter(prefix="/campaigns", tags=["campaigns"])
logger = logging.getLogger("campaigns.api")


def _campaign_or_404(db: Session, *, owner_user_id: str, campaign_id: str) -> Campaign:
    campaign = db.execute(
        select(Campaign).where(Campaign.id == campaign_id, Campaign.owner_user_id == owner_user_id)
    ).scalar_one_or_none()
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return campaign


def _campaign_out(campaign: Campaign) -> CampaignOut:
    return CampaignOut(
        id=campaign.id,
        segment_id=campaign.segment_id,
        name=campaign.name,
        message_template=campaign.message_template,
        status=campaign.status,
        scheduled_at=ensure_utc(campaign.scheduled_at),
        started_at=ensure_utc(campaign.started_at),
        completed_at=ensure_utc(campaign.completed_at),
        total_audience=campaign.total_audience or 0,
        sent_count=campaign.sent_count or 0,
        failed_count=campaign.failed_count or 0,
        success_rate=float(campaign.success_rate or 0.0),
        ai_summary=campaign.ai_summary,
        failure_reason=campaign.failure_reason,
        created_at=ensure_utc(campaign.created_at),
    )


def _progress_out(snapshot: ProgressSnapshot) -> ProgressOut:
    return ProgressOut(**snapshot.to_dict())


def _log_out(entry: CommunicationLog) -> CommunicationLogOut:
    return CommunicationLogOut(
        id=entry.id,
        campaign_id=entry.campaign_id,
        recipient_id=entry.recipient_id,
        rendered_message=entry.rendered_message,
        status=entry.status,
        attempts=entry.attempts or 0,
        last_attempt_at=ensure_utc(entry.last_attempt_at),
        failure_reason=entry.failure_reason,
        vendor_correlation_id=entry.vendor_correlation_id,
    )


@router.post(
    "",
    response_model=CampaignOut,
    summary="Create campaign and send now or schedule it",
    responses=error_responses(400, 401, 404, 409, 422, 500, 503),
)
def create_campaign(
    payload: CampaignCreateIn,
    db: Session = Depends(get_db),
    engine: CampaignEngine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    record = engine.lifecycle.create_campaign(
        owner_user_id=user_id,
        segment_id=payload.segment_id,
        name=payload.name.strip(),
        message_template=payload.message_template,
        scheduled_at=ensure_utc(payload.scheduled_at),
        launch=payload.launch,
    )
    return _campaign_out(_campaign_or_404(db, owner_user_id=user_id, campaign_id=record.id))


@router.get(
    "",
    response_model=CampaignListOut,
    summary="List campaigns",
    responses=error_responses(401, 422, 500),
)
def list_campaigns(
    status: CampaignStatus | None = Query(default=None),
    segment_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    count_stmt = select(func.count(Campaign.id)).where(Campaign.owner_user_id == user_id)
    stmt = select(Campaign).where(Campaign.owner_user_id == user_id)
    if status:
        count_stmt = count_stmt.where(Campaign.status == status.value)
        stmt = stmt.where(Campaign.status == status.value)
    if segment_id:
        count_stmt = count_stmt.where(Campaign.segment_id == segment_id)
        stmt = stmt.where(Campaign.segment_id == segment_id)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(Campaign.created_at.desc(), Campaign.id.desc()).offset(offset).limit(limit)
    ).scalars().all()
    count = len(rows)
    return CampaignListOut(
        items=[_campaign_out(row) for row in rows],
        pagination=page_meta(total=total, limit=limit, offset=offset, count=count),
    )


@router.get(
    "/metrics",
    response_model=CampaignMetricsOut,
    summary="Campaign dashboard totals",
    responses=error_responses(401, 500),
)
def campaign_metrics(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    status_rows = db.execute(
        select(Campaign.status, func.count(Campaign.id))
        .where(Campaign.owner_user_id == user_id)
        .group_by(Campaign.status)
    ).all()
    by_status = {status.value: 0 for status in CampaignStatus}
    for status_value, count in status_rows:
        by_status[status_value] = int(count)

    sent, failed = db.execute(
        select(
            func.coalesce(func.sum(Campaign.sent_count), 0),
            func.coalesce(func.sum(Campaign.failed_count), 0),
        ).where(Campaign.owner_user_id == user_id)
    ).one()
    average_success_rate = db.execute(
        select(func.avg(Campaign.success_rate)).where(
            Campaign.owner_user_id == user_id,
            Campaign.status == CampaignStatus.COMPLETED.value,
        )
    ).scalar_one()
    recent = db.execute(
        select(Campaign)
        .where(Campaign.owner_user_id == user_id)
        .order_by(Campaign.created_at.desc(), Campaign.id.desc())
        .limit(5)
    ).scalars().all()

    return CampaignMetricsOut(
        total_campaigns=sum(by_status.values()),
        campaigns_by_status=by_status,
        total_customers=int(db.execute(select(func.count(Customer.id))).scalar_one()),
        total_segments=int(
            db.execute(select(func.count(Segment.id)).where(Segment.owner_user_id == user_id)).scalar_one()
        ),
        messages_sent=int(sent or 0),
        messages_failed=int(failed or 0),
        average_success_rate=round(float(average_success_rate or 0.0), 2),
        recent_campaigns=[_campaign_out(row) for row in recent],
    )


@router.get(
    "/{campaign_id}",
    response_model=CampaignDetailOut,
    summary="Get campaign with live progress",
    responses=error_responses(401, 404, 500, 503),
)
def get_campaign(
    campaign_id: str,
    db: Session = Depends(get_db),
    engine: CampaignEngine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    campaign = _campaign_or_404(db, owner_user_id=user_id, campaign_id=campaign_id)
    snapshot = engine.progress.snapshot(campaign.id)
    return CampaignDetailOut(**_campaign_out(campaign).model_dump(), progress=_progress_out(snapshot))


@router.post(
    "/{campaign_id}/launch",
    response_model=CampaignOut,
    summary="Launch a draft campaign",
    responses=error_responses(401, 404, 409, 500, 503),
)
def launch_campaign(
    campaign_id: str,
    db: Session = Depends(get_db),
    engine: CampaignEngine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    campaign = _campaign_or_404(db, owner_user_id=user_id, campaign_id=campaign_id)
    engine.lifecycle.launch(campaign.id)
    db.refresh(campaign)
    return _campaign_out(campaign)


@router.get(
    "/{campaign_id}/logs",
    response_model=CommunicationLogListOut,
    summary="List per-recipient delivery log",
    responses=error_responses(401, 404, 422, 500),
)
def list_campaign_logs(
    campaign_id: str,
    status: DeliveryStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    campaign = _campaign_or_404(db, owner_user_id=user_id, campaign_id=campaign_id)
    count_stmt = select(func.count(CommunicationLog.id)).where(CommunicationLog.campaign_id == campaign.id)
    stmt = select(CommunicationLog).where(CommunicationLog.campaign_id == campaign.id)
    if status:
        count_stmt = count_stmt.where(CommunicationLog.status == status.value)
        stmt = stmt.where(CommunicationLog.status == status.value)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(CommunicationLog.created_at.asc(), CommunicationLog.id.asc()).offset(offset).limit(limit)
    ).scalars().all()
    count = len(rows)
    return CommunicationLogListOut(
        items=[_log_out(row) for row in rows],
        pagination=page_meta(total=total, limit=limit, offset=offset, count=count),
    )


@router.get(
    "/{campaign_id}/progress",
    summary="Stream delivery progress as server-sent events",
    responses=error_responses(401, 404, 500, 503),
)
def stream_campaign_progress(
    campaign_id: str,
    db: Session = Depends(get_db),
    engine: CampaignEngine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    campaign = _campaign_or_404(db, owner_user_id=user_id, campaign_id=campaign_id)
    feed = engine.progress.iter_progress(campaign.id, poll_seconds=engine.progress_poll_seconds)

    def event_generator():
        try:
            for snapshot in feed:
                yield f"event: progress\ndata: {json.dumps(snapshot.to_dict())}\n\n"
        except CampaignEngineError as exc:
            logger.error(json.dumps({"event": "progress_stream_failed", "campaign_id": campaign_id, "error": exc.message}))
            yield f"event: error\ndata: {json.dumps({'code': exc.code, 'message': exc.message})}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
