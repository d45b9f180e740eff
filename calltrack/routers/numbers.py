"""
routers/numbers.py — Tracking-number provisioning, release, update and search

Thin HTTP layer over services/provisioning_service.py. Every endpoint is
scoped to the tenant from require_tenant.

Business Rules:
- Provision returns 201 with the new number and its route
- Release returns {deleted, id, reason?}; a provider-side failure is a
  200 with deleted=false so the caller can retry later
- Update only touches fields present in the body; null marketing_source_id
  clears the source, expected_updated_at enables stale-client detection

Called by: main.py (router mount)
Depends on: dependencies, schemas/numbers.py, services/provisioning_service.py
"""

from datetime import timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from loguru import logger

from ..dependencies import get_provisioner, require_tenant
from ..schemas.numbers import (
    AvailableNumberOut,
    AvailableNumbersQuery,
    ProvisionNumberRequest,
    ReleaseOut,
    TrackingNumberOut,
    TrackingNumberPage,
    TrackingNumberSearchQuery,
    UpdateTrackingNumberRequest,
)
from ..services.provisioning_service import UNSET, NumberProvisioner, ProvisionRequest

router = APIRouter(prefix="/api/tracking-numbers", tags=["tracking-numbers"])


@router.get("", response_model=TrackingNumberPage)
async def list_tracking_numbers(
    query: Annotated[TrackingNumberSearchQuery, Query()],
    business_id: int = Depends(require_tenant),
    provisioner: NumberProvisioner = Depends(get_provisioner),
):
    """Active tracking numbers with their active route, paginated."""
    return provisioner.search(business_id, **query.model_dump())


@router.get("/available", response_model=list[AvailableNumberOut])
async def available_numbers(
    query: Annotated[AvailableNumbersQuery, Query()],
    business_id: int = Depends(require_tenant),
    provisioner: NumberProvisioner = Depends(get_provisioner),
):
    return await provisioner.available_numbers(**query.model_dump())


@router.post("", response_model=TrackingNumberOut, status_code=201)
async def provision_tracking_number(
    body: ProvisionNumberRequest,
    business_id: int = Depends(require_tenant),
    provisioner: NumberProvisioner = Depends(get_provisioner),
):
    logger.info("Provision requested for business {}", business_id)
    return await provisioner.provision(business_id, ProvisionRequest(**body.model_dump()))


@router.patch("/{tracking_number_id}", response_model=TrackingNumberOut)
async def update_tracking_number(
    tracking_number_id: int,
    body: UpdateTrackingNumberRequest,
    business_id: int = Depends(require_tenant),
    provisioner: NumberProvisioner = Depends(get_provisioner),
):
    sent = body.model_fields_set
    expected = body.expected_updated_at
    if expected is not None and expected.tzinfo is None:
        expected = expected.replace(tzinfo=timezone.utc)
    return await provisioner.update(
        business_id,
        tracking_number_id,
        forwarding_voice_number=(
            body.forwarding_voice_number if "forwarding_voice_number" in sent else UNSET
        ),
        marketing_source_id=body.marketing_source_id if "marketing_source_id" in sent else UNSET,
        expected_updated_at=expected,
    )


@router.delete("/{tracking_number_id}", response_model=ReleaseOut, response_model_exclude_none=True)
async def release_tracking_number(
    tracking_number_id: int,
    business_id: int = Depends(require_tenant),
    provisioner: NumberProvisioner = Depends(get_provisioner),
):
    return await provisioner.release(business_id, tracking_number_id)
