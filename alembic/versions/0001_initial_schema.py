"""initial competition schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2025-01-06 09:00:00

"""
from typing import Sequence, Union

from alembic import op

from arcomp.models import Base

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Baseline: the tables exactly as the models declare them, including the
    # partial unique index on ACTIVE carts. Later revisions are autogenerated.
    Base.metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind(), checkfirst=True)
