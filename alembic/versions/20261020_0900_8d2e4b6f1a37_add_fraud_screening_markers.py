"""add_fraud_screening_markers

Revision ID: 8d2e4b6f1a37
Revises: 3f1c2a7b9d10
Create Date: 2026-10-20 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8d2e4b6f1a37'
down_revision = '3f1c2a7b9d10'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Subscriptions already stored were activated before screening existed
    op.add_column('accounts', sa.Column('fraud_cleared_subscription_id', sa.TEXT(), nullable=True))
    op.add_column('accounts', sa.Column('vetoed_subscription_id', sa.TEXT(), nullable=True))
    op.execute(
        "UPDATE accounts SET fraud_cleared_subscription_id = subscription_id "
        "WHERE subscription_id IS NOT NULL"
    )


def downgrade() -> None:
    op.drop_column('accounts', 'vetoed_subscription_id')
    op.drop_column('accounts', 'fraud_cleared_subscription_id')
