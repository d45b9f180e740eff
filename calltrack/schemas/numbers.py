"""
schemas/numbers.py — Pydantic models for tracking-number endpoints

Business Rules:
- Phone numbers are E.164 (`+` followed by digits only)
- Country is a two-letter ISO code, upper-cased
- Area code is digits only; it is ignored when a specific number is given
- Update bodies distinguish "field omitted" from an explicit null via
  model_fields_set (null marketing_source_id clears the source)
- Search: page ≥ 1, 1 ≤ limit ≤ 100, marketing_source_id may be "#" for none

Called by: routers/numbers.py
Depends on: pydantic
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .responses import PageMeta

E164_PATTERN = r"^\+\d+$"


def _upper_country(v: str) -> str:
    v = (v or "").strip().upper()
    if len(v) != 2 or not v.isalpha():
        raise ValueError("country must be a two-letter ISO code")
    return v


# ── Requests ─────────────────────────────────────────────────────────


class ProvisionNumberRequest(BaseModel):
    phone_number: str | None = Field(default=None, pattern=E164_PATTERN)
    area_code: int | None = Field(default=None, ge=100, le=999)
    country: str = "US"
    marketing_source_id: int | None = None
    forwarding_voice_number: str | None = Field(default=None, pattern=E164_PATTERN)
    routing_rules: dict | None = None

    @field_validator("country")
    @classmethod
    def country_code(cls, v: str) -> str:
        return _upper_country(v)


class UpdateTrackingNumberRequest(BaseModel):
    forwarding_voice_number: str | None = Field(default=None, pattern=E164_PATTERN)
    marketing_source_id: int | None = None
    expected_updated_at: datetime | None = None


class AvailableNumbersQuery(BaseModel):
    country: str = "US"
    area_code: int | None = Field(default=None, ge=100, le=999)
    region: str | None = Field(default=None, max_length=32)
    limit: int = Field(default=10, ge=1, le=50)

    @field_validator("country")
    @classmethod
    def country_code(cls, v: str) -> str:
        return _upper_country(v)

    @field_validator("region")
    @classmethod
    def region_upper(cls, v: str | None) -> str | None:
        return v.strip().upper() if v else None


class TrackingNumberSearchQuery(BaseModel):
    number: str | None = Field(default=None, max_length=32)
    forwarding_voice_number: str | None = Field(default=None, max_length=32)
    marketing_source_id: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    sort_by: Literal["createdAt", "updatedAt", "number"] = "createdAt"
    sort_order: Literal["ASC", "DESC"] = "DESC"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)

    @field_validator("marketing_source_id")
    @classmethod
    def source_filter(cls, v: str | None) -> str | None:
        if v is None or v == "" or v == "#":
            return v or None
        if not v.isdigit():
            raise ValueError("marketing_source_id must be an id or '#'")
        return v


# ── Responses ────────────────────────────────────────────────────────


class TrackingNumberOut(BaseModel, extra="allow"):
    id: int
    number: str
    status: str
    business_id: int
    marketing_source_id: int | None = None
    forwarding_voice_number: str | None = None
    route_id: int | None = None
    purchased_at: datetime | None = None
    released_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TrackingNumberPage(BaseModel):
    items: list[TrackingNumberOut] = Field(default_factory=list)
    meta: PageMeta


class ReleaseOut(BaseModel):
    deleted: bool
    id: int
    reason: str | None = None


class AvailableNumberOut(BaseModel, extra="allow"):
    phone_number: str
    friendly_name: str | None = None
    locality: str | None = None
    region: str | None = None
    iso_country: str | None = None
    capabilities: dict = Field(default_factory=dict)
