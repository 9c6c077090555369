"""Initial schema baseline

Revision ID: 3c1d9e0a7b52
Revises:
Create Date: 2026-09-28 09:14:02.518330

"""

from typing import Sequence
from typing import Union

# revision identifiers, used by Alembic.
revision: str = "3c1d9e0a7b52"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Baseline marker; service schemas add their own revisions on top."""
    pass


def downgrade() -> None:
    """Cannot downgrade from baseline."""
    raise NotImplementedError("Cannot downgrade from initial baseline")
