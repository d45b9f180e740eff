"""initial schema - tenants, tracking numbers, calls, recording jobs, hourly rollups

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

Creates every table from the SQLAlchemy models, including the partial
unique indexes (one active route per number, one live row per E.164 number).
"""
from typing import Sequence, Union

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from SQLAlchemy models (checkfirst, so re-runnable)."""
    from calltrack.database import engine
    from calltrack.models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)


def downgrade() -> None:
    """Drop all tables. Destructive; dev/test only."""
    from calltrack.database import engine
    from calltrack.models import Base

    Base.metadata.drop_all(bind=engine)
