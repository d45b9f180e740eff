"""
provisioning_service.py — Tracking-number provisioning saga, release and updates

Business Rules:
- Capacity is reserved with a guarded increment (used < max) before any
  provider call; no row lock spans the purchase
- A failed purchase releases the reservation; a failed local save releases
  the purchased number at Twilio and then the reservation. Compensation
  failures are logged, never retried (small counter drift is accepted)
- Release: active → releasing (guarded), Twilio release, then released +
  route soft-delete + counter decrement (floored at 0). A failed Twilio
  release reverts releasing → active
- Updates use compare-and-swap on updated_at for the number and its active
  route, retried with 15–50ms jitter before surfacing Conflict
- Numbers, routes and marketing sources are always tenant-scoped

Called by: routers/numbers.py
Depends on: connectors/telephony.py, services/ownership.py, models
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import asc, desc, func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import utcnow
from ..exceptions import (
    CapacityExceededError,
    ConflictError,
    NotFoundError,
    ValidationError,
    handle_db_error,
    is_retryable_db_error,
)
from ..models import Business, MarketingSource, NumberRoute, TrackingNumber
from ..models.enums import NumberRouteStatus, TrackingNumberStatus
from .ownership import find_owned

log = logging.getLogger("calltrack.provisioning")

UNSET = object()  # distinguishes "field omitted" from an explicit None
OCC_JITTER_RANGE = (0.015, 0.050)  # seconds

SORT_COLUMNS = {
    "createdAt": TrackingNumber.created_at,
    "updatedAt": TrackingNumber.updated_at,
    "number": TrackingNumber.number,
}


class _StaleWrite(Exception):
    pass


@dataclass
class ProvisionRequest:
    phone_number: str | None = None
    area_code: int | None = None
    country: str = "US"
    marketing_source_id: int | None = None
    forwarding_voice_number: str | None = None
    routing_rules: dict | None = None


def _insert_for(db: Session):
    if db.get_bind().dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


def active_route(db: Session, tracking_number_id: int) -> NumberRoute | None:
    return (
        db.query(NumberRoute)
        .filter(
            NumberRoute.tracking_number_id == tracking_number_id,
            NumberRoute.status == NumberRouteStatus.ACTIVE.value,
        )
        .first()
    )


def find_active_by_number(db: Session, number: str) -> TrackingNumber | None:
    return (
        db.query(TrackingNumber)
        .filter(
            TrackingNumber.number == number,
            TrackingNumber.status == TrackingNumberStatus.ACTIVE.value,
        )
        .first()
    )


def serialize(tn: TrackingNumber, route: NumberRoute | None) -> dict:
    return {
        "id": tn.id,
        "number": tn.number,
        "status": tn.status,
        "business_id": tn.business_id,
        "marketing_source_id": tn.marketing_source_id,
        "forwarding_voice_number": route.forwarding_voice_number if route else None,
        "route_id": route.id if route else None,
        "purchased_at": tn.purchased_at,
        "released_at": tn.released_at,
        "created_at": tn.created_at,
        "updated_at": tn.updated_at,
    }


class NumberProvisioner:
    def __init__(self, db: Session, telephony, *, occ_max_retries: int = 3):
        self.db = db
        self.telephony = telephony
        self.occ_max_retries = occ_max_retries

    # ── Capacity counter ────────────────────────────────────────────────

    def _reserve(self, business_id: int) -> None:
        reserved = (
            self.db.query(Business)
            .filter(
                Business.id == business_id,
                Business.tracking_numbers_used_count < Business.max_tracking_numbers,
            )
            .update(
                {Business.tracking_numbers_used_count: Business.tracking_numbers_used_count + 1},
                synchronize_session=False,
            )
        )
        self.db.commit()
        if reserved:
            return
        if self.db.get(Business, business_id) is None:
            raise NotFoundError("Business not found")
        raise CapacityExceededError(
            "You have reached the limit of tracking numbers for your plan"
        )

    def _decrement(self, business_id: int) -> int:
        return (
            self.db.query(Business)
            .filter(Business.id == business_id, Business.tracking_numbers_used_count > 0)
            .update(
                {Business.tracking_numbers_used_count: Business.tracking_numbers_used_count - 1},
                synchronize_session=False,
            )
        )

    def _rollback_reservation(self, business_id: int) -> None:
        try:
            self._decrement(business_id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Failed to roll back capacity reservation for business {business_id}: {e}")

    # ── Provision ───────────────────────────────────────────────────────

    async def provision(self, business_id: int, req: ProvisionRequest) -> dict:
        if req.marketing_source_id is not None:
            find_owned(self.db, MarketingSource, business_id, req.marketing_source_id, label="Marketing source")

        self._reserve(business_id)

        try:
            purchased = await self.telephony.purchase(
                phone_number=req.phone_number,
                country=req.country,
                area_code=req.area_code,
            )
        except Exception:
            self._rollback_reservation(business_id)
            raise

        now = utcnow()
        try:
            tn = TrackingNumber(
                business_id=business_id,
                marketing_source_id=req.marketing_source_id,
                number=purchased.phone_number,
                provider_number_id=purchased.sid,
                status=TrackingNumberStatus.ACTIVE.value,
                purchased_at=now,
                created_at=now,
                updated_at=now,
            )
            self.db.add(tn)
            self.db.flush()
            route = None
            if req.forwarding_voice_number:
                route = NumberRoute(
                    tracking_number_id=tn.id,
                    status=NumberRouteStatus.ACTIVE.value,
                    forwarding_voice_number=req.forwarding_voice_number,
                    routing_rules=req.routing_rules,
                    effective_from=now,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(route)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Saving {purchased.phone_number} failed; releasing {purchased.sid}: {e}")
            try:
                released = await self.telephony.release(sid=purchased.sid)
                if not released.released:
                    log.error(
                        f"Compensating release of {purchased.sid} failed: {released.reason} {released.detail or ''}"
                    )
            except Exception as release_error:
                log.error(f"Compensating release of {purchased.sid} raised: {release_error}")
            finally:
                self._rollback_reservation(business_id)
            handle_db_error(e, "Failed to save tracking number")

        log.info(f"Provisioned {tn.number} (id={tn.id}) for business {business_id}")
        return serialize(tn, route)

    # ── Release ─────────────────────────────────────────────────────────

    async def release(self, business_id: int, tracking_number_id: int) -> dict:
        moved = (
            self.db.query(TrackingNumber)
            .filter(
                TrackingNumber.id == tracking_number_id,
                TrackingNumber.business_id == business_id,
                TrackingNumber.status == TrackingNumberStatus.ACTIVE.value,
            )
            .update(
                {
                    TrackingNumber.status: TrackingNumberStatus.RELEASING.value,
                    TrackingNumber.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        tn = find_owned(self.db, TrackingNumber, business_id, tracking_number_id, label="Tracking number")
        self.db.refresh(tn)
        if not moved:
            raise ConflictError("Release already in progress or not permitted")

        try:
            result = await self.telephony.release(sid=tn.provider_number_id, phone_number=tn.number)
            failure = None if result.released or result.reason == "not_found" else result.reason
        except Exception as e:
            log.error(f"Twilio release of {tn.number} raised: {e}")
            failure = "provider_error"

        if failure is not None:
            self.db.query(TrackingNumber).filter(
                TrackingNumber.id == tn.id,
                TrackingNumber.status == TrackingNumberStatus.RELEASING.value,
            ).update(
                {
                    TrackingNumber.status: TrackingNumberStatus.ACTIVE.value,
                    TrackingNumber.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
            self.db.commit()
            log.warning(f"Release of {tn.number} failed ({failure}); reverted to active")
            return {"deleted": False, "id": tn.id, "reason": failure}

        now = utcnow()
        try:
            self.db.query(TrackingNumber).filter(TrackingNumber.id == tn.id).update(
                {
                    TrackingNumber.status: TrackingNumberStatus.RELEASED.value,
                    TrackingNumber.provider_number_id: None,
                    TrackingNumber.released_at: now,
                    TrackingNumber.updated_at: now,
                },
                synchronize_session=False,
            )
            self.db.query(NumberRoute).filter(
                NumberRoute.tracking_number_id == tn.id,
                NumberRoute.status == NumberRouteStatus.ACTIVE.value,
            ).update(
                {
                    NumberRoute.status: NumberRouteStatus.DELETED.value,
                    NumberRoute.deleted_at: now,
                    NumberRoute.effective_to: now,
                    NumberRoute.updated_at: now,
                },
                synchronize_session=False,
            )
            self._decrement(business_id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Released {tn.number} at Twilio but failed to persist: {e}")
            handle_db_error(e, "Failed to finalize release")

        self.db.expire_all()
        log.info(f"Released {tn.number} (id={tn.id}) for business {business_id}")
        return {"deleted": True, "id": tn.id}

    # ── Update ──────────────────────────────────────────────────────────

    async def update(
        self,
        business_id: int,
        tracking_number_id: int,
        *,
        forwarding_voice_number=UNSET,
        marketing_source_id=UNSET,
        expected_updated_at: datetime | None = None,
    ) -> dict:
        if forwarding_voice_number is UNSET and marketing_source_id is UNSET:
            raise ValidationError("Nothing to update")
        if forwarding_voice_number is not UNSET and not forwarding_voice_number:
            raise ValidationError("forwarding_voice_number cannot be empty")
        if marketing_source_id not in (UNSET, None):
            find_owned(self.db, MarketingSource, business_id, marketing_source_id, label="Marketing source")

        for attempt in range(self.occ_max_retries):
            self.db.expire_all()
            tn = find_owned(self.db, TrackingNumber, business_id, tracking_number_id, label="Tracking number")
            if tn.status != TrackingNumberStatus.ACTIVE:
                raise ConflictError(f"Tracking number is {tn.status}; only active numbers can be updated")
            if expected_updated_at is not None and tn.updated_at != expected_updated_at:
                raise ConflictError("Tracking number was modified by another request; reload and retry")

            try:
                self._apply_update(tn, forwarding_voice_number, marketing_source_id)
                self.db.commit()
            except _StaleWrite:
                self.db.rollback()
                log.info(f"Stale write on tracking number {tn.id} (attempt {attempt + 1})")
                await asyncio.sleep(random.uniform(*OCC_JITTER_RANGE))
                continue
            except SQLAlchemyError as e:
                self.db.rollback()
                if is_retryable_db_error(e) and attempt < self.occ_max_retries - 1:
                    await asyncio.sleep(random.uniform(*OCC_JITTER_RANGE))
                    continue
                handle_db_error(e, "Failed to update tracking number")

            self.db.expire_all()
            tn = self.db.get(TrackingNumber, tracking_number_id)
            return serialize(tn, active_route(self.db, tn.id))

        raise ConflictError("Concurrent update detected; please retry")

    def _apply_update(self, tn: TrackingNumber, forwarding, marketing_source_id) -> None:
        now = utcnow()
        if forwarding is not UNSET:
            route = active_route(self.db, tn.id)
            if route is not None:
                swapped = (
                    self.db.query(NumberRoute)
                    .filter(
                        NumberRoute.id == route.id,
                        NumberRoute.status == NumberRouteStatus.ACTIVE.value,
                        NumberRoute.updated_at == route.updated_at,
                    )
                    .update(
                        {NumberRoute.forwarding_voice_number: forwarding, NumberRoute.updated_at: now},
                        synchronize_session=False,
                    )
                )
                if not swapped:
                    raise _StaleWrite()
            else:
                insert = _insert_for(self.db)
                stmt = insert(NumberRoute).values(
                    tracking_number_id=tn.id,
                    status=NumberRouteStatus.ACTIVE.value,
                    forwarding_voice_number=forwarding,
                    effective_from=now,
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["tracking_number_id"],
                    index_where=text("status = 'active'"),
                    set_={
                        "forwarding_voice_number": stmt.excluded.forwarding_voice_number,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                self.db.execute(stmt)

        values = {TrackingNumber.updated_at: now}
        if marketing_source_id is not UNSET:
            values[TrackingNumber.marketing_source_id] = marketing_source_id
        swapped = (
            self.db.query(TrackingNumber)
            .filter(
                TrackingNumber.id == tn.id,
                TrackingNumber.status == TrackingNumberStatus.ACTIVE.value,
                TrackingNumber.updated_at == tn.updated_at,
            )
            .update(values, synchronize_session=False)
        )
        if not swapped:
            raise _StaleWrite()

    # ── Reads ───────────────────────────────────────────────────────────

    async def available_numbers(self, *, country: str = "US", area_code=None, region=None, limit: int = 10) -> list[dict]:
        return await self.telephony.search_available(
            country=country, area_code=area_code, region=region, limit=limit
        )

    def search(
        self,
        business_id: int,
        *,
        number: str | None = None,
        forwarding_voice_number: str | None = None,
        marketing_source_id: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        sort_by: str = "createdAt",
        sort_order: str = "DESC",
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        """Paginated active numbers: {items, meta: {total, page, limit, pageCount, hasNext, hasPrev}}."""
        q = (
            self.db.query(TrackingNumber, NumberRoute)
            .outerjoin(
                NumberRoute,
                (NumberRoute.tracking_number_id == TrackingNumber.id)
                & (NumberRoute.status == NumberRouteStatus.ACTIVE.value),
            )
            .filter(
                TrackingNumber.business_id == business_id,
                TrackingNumber.status == TrackingNumberStatus.ACTIVE.value,
            )
        )
        if number:
            q = q.filter(TrackingNumber.number.ilike(f"%{_escape_like(number)}%", escape="\\"))
        if forwarding_voice_number:
            q = q.filter(
                NumberRoute.forwarding_voice_number.ilike(
                    f"%{_escape_like(forwarding_voice_number)}%", escape="\\"
                )
            )
        if marketing_source_id == "#":
            q = q.filter(TrackingNumber.marketing_source_id.is_(None))
        elif marketing_source_id:
            try:
                q = q.filter(TrackingNumber.marketing_source_id == int(marketing_source_id))
            except ValueError as e:
                raise ValidationError("Invalid identifier") from e
        if created_from:
            q = q.filter(TrackingNumber.created_at >= created_from)
        if created_to:
            q = q.filter(TrackingNumber.created_at <= created_to)

        total = q.with_entities(func.count(TrackingNumber.id)).scalar() or 0
        column = SORT_COLUMNS.get(sort_by, TrackingNumber.created_at)
        direction = asc if sort_order.upper() == "ASC" else desc
        rows = (
            q.order_by(direction(column), direction(TrackingNumber.id))
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        page_count = -(-total // limit) if total else 0
        return {
            "items": [serialize(tn, route) for tn, route in rows],
            "meta": {
                "total": total,
                "page": page,
                "limit": limit,
                "pageCount": page_count,
                "hasNext": page < page_count,
                "hasPrev": page > 1,
            },
        }


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
