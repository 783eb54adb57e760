from fastapi import APIRouter, Depends
from pydantic import ValidationError

from app.core.api_docs import error_responses
from app.core.deps import get_engine
from app.models.campaign import DeliveryStatus
from app.schemas.campaign import CommunicationLogOut
from app.schemas.receipt import ReceiptBatchIn, ReceiptBatchOut, ReceiptIn, ReceiptResultOut
from app.services.campaign_store import LogEntryRecord
from app.services.engine import CampaignEngine
from app.services.receipt_reconciler import Receipt

router = APIRouter(prefix="/receipts", tags=["receipts"])


def _receipt(payload: ReceiptIn) -> Receipt:
    return Receipt(
        correlation_id=payload.correlation_id,
        status=DeliveryStatus(payload.status),
        occurred_at=payload.occurred_at,
        error_reason=payload.error,
    )


def _entry_out(entry: LogEntryRecord) -> CommunicationLogOut:
    return CommunicationLogOut(
        id=entry.id,
        campaign_id=entry.campaign_id,
        recipient_id=entry.recipient_id,
        rendered_message=entry.rendered_message,
        status=entry.status.value,
        attempts=entry.attempts,
        last_attempt_at=entry.last_attempt_at,
        failure_reason=entry.failure_reason,
        vendor_correlation_id=entry.vendor_correlation_id,
    )


def _validation_message(exc: ValidationError) -> str:
    issues = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", []))
        issues.append(f"{location}: {err.get('msg', 'Invalid value')}" if location else err.get("msg", "Invalid value"))
    return "; ".join(issues)[:255]


@router.post(
    "",
    response_model=CommunicationLogOut,
    summary="Apply a vendor delivery receipt",
    responses=error_responses(404, 422, 500, 503),
)
def apply_receipt(payload: ReceiptIn, engine: CampaignEngine = Depends(get_engine)):
    return _entry_out(engine.reconciler.apply(_receipt(payload)))


@router.post(
    "/batch",
    response_model=ReceiptBatchOut,
    summary="Apply vendor delivery receipts in bulk",
    responses=error_responses(422, 500, 503),
)
def apply_receipt_batch(payload: ReceiptBatchIn, engine: CampaignEngine = Depends(get_engine)):
    results: list[ReceiptResultOut] = []
    for raw in payload.receipts:
        correlation_id = raw.get("messageId") or raw.get("correlationId") or raw.get("correlation_id")
        try:
            receipt = _receipt(ReceiptIn.model_validate(raw))
        except ValidationError as exc:
            results.append(
                ReceiptResultOut(
                    correlation_id=str(correlation_id) if correlation_id else None,
                    ok=False,
                    error=_validation_message(exc),
                )
            )
            continue

        outcome = engine.reconciler.apply_batch([receipt])[0]
        results.append(
            ReceiptResultOut(
                correlation_id=outcome.correlation_id,
                ok=outcome.ok,
                entry=_entry_out(outcome.entry) if outcome.entry else None,
                error=outcome.error,
            )
        )

    applied = sum(1 for result in results if result.ok)
    return ReceiptBatchOut(results=results, applied=applied, failed=len(results) - applied)
