"""
schemas/responses.py — Shared response models for OpenAPI documentation

Called by: routers/*.py
Depends on: pydantic
"""

from __future__ import annotations

from pydantic import BaseModel, Field


# ── Base Wrappers ───────────────────────────────────────────────────────


class PageMeta(BaseModel):
    total: int = 0
    page: int = 1
    limit: int = 20
    pageCount: int = 0
    hasNext: bool = False
    hasPrev: bool = False


class OkResponse(BaseModel):
    ok: bool = True


class HealthResponse(BaseModel):
    status: str = "ok"
    checks: dict[str, str] = Field(default_factory=dict)
