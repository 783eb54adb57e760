from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.common import PaginationMeta

CampaignStatusValue = Literal["DRAFT", "SCHEDULED", "RUNNING", "IN_PROGRESS", "COMPLETED", "FAILED"]
DeliveryStatusValue = Literal["PENDING", "SENT", "FAILED"]


class CampaignCreateIn(BaseModel):
    segment_id: str = Field(min_length=1, max_length=36)
    name: str = Field(min_length=2, max_length=120)
    message_template: str = Field(min_length=1, max_length=2000)
    scheduled_at: datetime | None = None
    launch: bool = True

    @field_validator("message_template")
    @classmethod
    def validate_message_template(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message_template is required")
        return value

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "segment_id": "seg_123",
                "name": "We miss you",
                "message_template": "Hi {{name}}, here is 10% off your next order!",
                "scheduled_at": None,
                "launch": True,
            }
        }
    )


class ProgressOut(BaseModel):
    campaign_id: str
    status: CampaignStatusValue
    total: int
    sent: int
    failed: int
    pending: int
    progress_pct: float
    is_complete: bool
    generated_at: datetime


class CampaignOut(BaseModel):
    id: str
    segment_id: str
    name: str
    message_template: str
    status: CampaignStatusValue
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    total_audience: int
    sent_count: int
    failed_count: int
    success_rate: float
    ai_summary: str | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None


class CampaignDetailOut(CampaignOut):
    progress: ProgressOut


class CampaignListOut(BaseModel):
    items: list[CampaignOut]
    pagination: PaginationMeta


class CommunicationLogOut(BaseModel):
    id: str
    campaign_id: str
    recipient_id: str
    rendered_message: str
    status: DeliveryStatusValue
    attempts: int
    last_attempt_at: datetime | None = None
    failure_reason: str | None = None
    vendor_correlation_id: str | None = None


class CommunicationLogListOut(BaseModel):
    items: list[CommunicationLogOut]
    pagination: PaginationMeta


class CampaignMetricsOut(BaseModel):
    total_campaigns: int
    campaigns_by_status: dict[str, int]
    total_customers: int
    total_segments: int
    messages_sent: int
    messages_failed: int
    average_success_rate: float
    recent_campaigns: list[CampaignOut]
