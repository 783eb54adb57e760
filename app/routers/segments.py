import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.clock import ensure_utc
from app.core.deps import get_current_user_id, get_db, get_engine
from app.core.id_utils import generate_shortuuid
from app.models.campaign import Campaign, Segment
from app.schemas.common import page_meta
from app.schemas.segment import (
    SegmentCreateIn,
    SegmentFromTextIn,
    SegmentFromTextOut,
    SegmentListOut,
    SegmentOut,
    SegmentPreviewIn,
    SegmentPreviewOut,
    SegmentUpdateIn,
)
from app.services.engine import CampaignEngine

router = APIRouter(prefix="/segments", tags=["segments"])
logger = logging.getLogger("campaigns.api")

PREVIEW_SAMPLE_SIZE = 20


def _segment_or_404(db: Session, *, owner_user_id: str, segment_id: str) -> Segment:
    segment = db.execute(
        select(Segment).where(Segment.id == segment_id, Segment.owner_user_id == owner_user_id)
    ).scalar_one_or_none()
    if not segment:
        raise HTTPException(status_code=404, detail="Segment not found")
    return segment


def _ensure_unique_name(db: Session, *, owner_user_id: str, name: str, exclude_id: str | None = None) -> None:
    stmt = select(Segment.id).where(
        Segment.owner_user_id == owner_user_id,
        func.lower(Segment.name) == name.lower(),
    )
    if exclude_id:
        stmt = stmt.where(Segment.id != exclude_id)
    if db.execute(stmt).scalar_one_or_none():
        raise HTTPException(status_code=409, detail="Segment name already exists")


def _segment_out(segment: Segment) -> SegmentOut:
    return SegmentOut(
        id=segment.id,
        name=segment.name,
        description=segment.description,
        rules=segment.rules_json or {},
        audience_size=segment.audience_size or 0,
        created_at=ensure_utc(segment.created_at),
        updated_at=ensure_utc(segment.updated_at),
    )


@router.post(
    "/preview",
    response_model=SegmentPreviewOut,
    summary="Preview the audience of ad-hoc rules",
    responses=error_responses(400, 401, 422, 500, 503),
)
def preview_rules(
    payload: SegmentPreviewIn,
    engine: CampaignEngine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    recipients = engine.resolver.resolve(payload.rules)
    return SegmentPreviewOut(
        audience_size=len(recipients),
        sample_customer_ids=[recipient.id for recipient in recipients[:PREVIEW_SAMPLE_SIZE]],
    )


@router.post(
    "/from-text",
    response_model=SegmentFromTextOut,
    summary="Draft segment rules from a plain-language description",
    responses=error_responses(401, 422, 500, 502, 503),
)
def rules_from_text(
    payload: SegmentFromTextIn,
    engine: CampaignEngine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    try:
        rules = engine.text_generator.rules_from_text(payload.query)
    except Exception as exc:  # noqa: BLE001
        logger.warning(json.dumps({"event": "rules_from_text_failed", "error": str(exc)[:255]}))
        raise HTTPException(status_code=502, detail="Text generation failed") from exc

    audience_size = engine.resolver.audience_size(rules) if rules else None
    return SegmentFromTextOut(query=payload.query, rules=rules, audience_size=audience_size)


@router.post(
    "",
    response_model=SegmentOut,
    summary="Create segment",
    responses=error_responses(400, 401, 409, 422, 500, 503),
)
def create_segment(
    payload: SegmentCreateIn,
    db: Session = Depends(get_db),
    engine: CampaignEngine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    name = payload.name.strip()
    _ensure_unique_name(db, owner_user_id=user_id, name=name)
    audience_size = engine.resolver.audience_size(payload.rules)

    segment = Segment(
        id=generate_shortuuid(),
        owner_user_id=user_id,
        name=name,
        description=payload.description.strip() if payload.description else None,
        rules_json=payload.rules,
        audience_size=audience_size,
    )
    db.add(segment)
    db.commit()
    db.refresh(segment)
    logger.info(json.dumps({"event": "segment_created", "segment_id": segment.id, "audience_size": audience_size}))
    return _segment_out(segment)


@router.get(
    "",
    response_model=SegmentListOut,
    summary="List segments",
    responses=error_responses(401, 422, 500),
)
def list_segments(
    q: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    count_stmt = select(func.count(Segment.id)).where(Segment.owner_user_id == user_id)
    stmt = select(Segment).where(Segment.owner_user_id == user_id)
    if q and q.strip():
        pattern = f"%{q.strip().lower()}%"
        count_stmt = count_stmt.where(func.lower(Segment.name).like(pattern))
        stmt = stmt.where(func.lower(Segment.name).like(pattern))

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(Segment.created_at.desc(), Segment.id.desc()).offset(offset).limit(limit)
    ).scalars().all()
    count = len(rows)
    return SegmentListOut(
        items=[_segment_out(row) for row in rows],
        pagination=page_meta(total=total, limit=limit, offset=offset, count=count),
    )


@router.get(
    "/{segment_id}",
    response_model=SegmentOut,
    summary="Get segment",
    responses=error_responses(401, 404, 500),
)
def get_segment(
    segment_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    return _segment_out(_segment_or_404(db, owner_user_id=user_id, segment_id=segment_id))


@router.patch(
    "/{segment_id}",
    response_model=SegmentOut,
    summary="Update segment",
    responses=error_responses(400, 401, 404, 409, 422, 500, 503),
)
def update_segment(
    segment_id: str,
    payload: SegmentUpdateIn,
    db: Session = Depends(get_db),
    engine: CampaignEngine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    segment = _segment_or_404(db, owner_user_id=user_id, segment_id=segment_id)
    if payload.name is not None:
        name = payload.name.strip()
        _ensure_unique_name(db, owner_user_id=user_id, name=name, exclude_id=segment.id)
        segment.name = name
    if payload.description is not None:
        segment.description = payload.description.strip() or None
    if payload.rules is not None:
        segment.audience_size = engine.resolver.audience_size(payload.rules)
        segment.rules_json = payload.rules

    db.commit()
    db.refresh(segment)
    return _segment_out(segment)


@router.delete(
    "/{segment_id}",
    summary="Delete segment",
    responses=error_responses(401, 404, 409, 500),
)
def delete_segment(
    segment_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    segment = _segment_or_404(db, owner_user_id=user_id, segment_id=segment_id)
    in_use = db.execute(
        select(func.count(Campaign.id)).where(Campaign.segment_id == segment.id)
    ).scalar_one()
    if in_use:
        raise HTTPException(status_code=409, detail="Segment is used by existing campaigns")
    db.delete(segment)
    db.commit()
    return {"ok": True}
