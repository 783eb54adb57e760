from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.schemas.common import PaginationMeta


class CustomerUpsertIn(BaseModel):
    external_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=120)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=40)
    total_spend: Decimal | None = Field(default=None, ge=0)
    visit_count: int | None = Field(default=None, ge=0)
    last_purchase_at: datetime | None = None

    @field_validator("external_id", "name")
    @classmethod
    def validate_required_text(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("value is required")
        return cleaned

    @field_validator("phone")
    @classmethod
    def normalize_phone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "external_id": "crm-1001",
                "name": "Ada Obi",
                "email": "ada@example.com",
                "phone": "+2348012345678",
            }
        }
    )


class CustomerOut(BaseModel):
    id: str
    external_id: str
    name: str
    email: str | None = None
    phone: str | None = None
    total_spend: float
    visit_count: int
    last_purchase_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CustomerListOut(BaseModel):
    items: list[CustomerOut]
    pagination: PaginationMeta


class OrderCreateIn(BaseModel):
    external_id: str = Field(min_length=1, max_length=64)
    customer_external_id: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(gt=0)
    status: str = Field(default="placed", min_length=1, max_length=20)
    ordered_at: datetime | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "external_id": "order-5001",
                "customer_external_id": "crm-1001",
                "amount": "2500.00",
                "ordered_at": "2026-01-15T10:30:00Z",
            }
        }
    )


class OrderOut(BaseModel):
    id: str
    external_id: str
    customer_id: str
    amount: float
    status: str
    ordered_at: datetime
    customer: CustomerOut
