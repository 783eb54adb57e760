from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from app.schemas.campaign import CommunicationLogOut


class ReceiptIn(BaseModel):
    correlation_id: str = Field(
        validation_alias=AliasChoices("messageId", "correlationId", "correlation_id"),
        min_length=1,
        max_length=64,
    )
    status: Literal["SENT", "FAILED"]
    error: str | None = Field(
        default=None,
        validation_alias=AliasChoices("error", "errorReason", "error_reason"),
        max_length=1000,
    )
    occurred_at: datetime = Field(validation_alias=AliasChoices("timestamp", "occurredAt", "occurred_at"))

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "messageId": "msg-4Xq9yT2mKp7Lr8Vw",
                "status": "FAILED",
                "error": "Handset unreachable",
                "timestamp": "2026-01-15T10:31:02Z",
            }
        },
    )


class ReceiptBatchIn(BaseModel):
    receipts: list[dict[str, Any]] = Field(min_length=1, max_length=500)


class ReceiptResultOut(BaseModel):
    correlation_id: str | None = None
    ok: bool
    entry: CommunicationLogOut | None = None
    error: str | None = None


class ReceiptBatchOut(BaseModel):
    results: list[ReceiptResultOut]
    applied: int
    failed: int
