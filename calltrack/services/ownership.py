"""Tenant-scoped lookups for tenant-owned rows.

Called by: services/provisioning_service.py
Depends on: models
"""

from typing import TypeVar

from sqlalchemy.orm import Session

from ..exceptions import NotFoundError

M = TypeVar("M")


def find_owned(db: Session, model: type[M], business_id: int, entity_id: int, *, label: str | None = None) -> M:
    """Return the row only if it belongs to the tenant, else NotFound.

    A row owned by another tenant is reported exactly like a missing one.
    """
    row = (
        db.query(model)
        .filter(model.id == entity_id, model.business_id == business_id)
        .first()
    )
    if row is None:
        raise NotFoundError(f"{label or model.__name__} not found")
    return row
