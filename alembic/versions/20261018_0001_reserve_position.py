"""Track the chain position the mirrored reserves were taken from.

Revision ID: 002_reserve_position
Revises: 001_initial
Create Date: 2026-10-18 00:01:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "002_reserve_position"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("tokens") as batch_op:
        batch_op.add_column(sa.Column("reserves_block", sa.BigInteger(), nullable=True))
        batch_op.add_column(sa.Column("reserves_log_index", sa.Integer(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("tokens") as batch_op:
        batch_op.drop_column("reserves_log_index")
        batch_op.drop_column("reserves_block")
