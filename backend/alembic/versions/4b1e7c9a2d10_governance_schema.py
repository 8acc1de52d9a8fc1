"""governance_schema

Revision ID: 4b1e7c9a2d10
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op

from autopilot.db_base import Base
import autopilot.models  # noqa: F401 - required to register all model metadata


# revision identifiers, used by Alembic.
revision: str = '4b1e7c9a2d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
