from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.schemas.common import PaginationMeta

_RULES_EXAMPLE = {
    "operator": "AND",
    "children": [
        {"field": "totalSpend", "operator": ">", "value": 10000},
        {"field": "lastPurchase", "operator": "since", "value": "90d"},
    ],
}


class SegmentCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    rules: dict[str, Any]

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "High spenders gone quiet",
                "description": "Spent over 10k, no purchase in 90 days",
                "rules": _RULES_EXAMPLE,
            }
        }
    )


class SegmentUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    rules: dict[str, Any] | None = None

    @model_validator(mode="after")
    def validate_has_field(self) -> "SegmentUpdateIn":
        if self.name is None and self.description is None and self.rules is None:
            raise ValueError("At least one field must be provided")
        return self


class SegmentOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    rules: dict[str, Any]
    audience_size: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SegmentListOut(BaseModel):
    items: list[SegmentOut]
    pagination: PaginationMeta


class SegmentPreviewIn(BaseModel):
    rules: dict[str, Any]

    model_config = ConfigDict(json_schema_extra={"example": {"rules": _RULES_EXAMPLE}})


class SegmentPreviewOut(BaseModel):
    audience_size: int
    sample_customer_ids: list[str]


class SegmentFromTextIn(BaseModel):
    query: str = Field(min_length=3, max_length=2000)

    model_config = ConfigDict(
        json_schema_extra={"example": {"query": "customers who spent more than 5000 and visited at least 3 times"}}
    )


class SegmentFromTextOut(BaseModel):
    query: str
    rules: dict[str, Any] | None = None
    audience_size: int | None = None
