"""create_accounts_and_inbound_events

Revision ID: 3f1c2a7b9d10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c2a7b9d10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'accounts',
        sa.Column('id', sa.TEXT(), nullable=False),
        sa.Column('email', sa.TEXT(), nullable=False),
        sa.Column('name', sa.TEXT(), nullable=True),
        sa.Column('customer_id', sa.TEXT(), nullable=True),
        sa.Column('subscription_id', sa.TEXT(), nullable=True),
        sa.Column('price_id', sa.TEXT(), nullable=True),
        sa.Column('subscription_state', sa.TEXT(), nullable=False, server_default='new'),
        sa.Column('previous_subscription_state', sa.TEXT(), nullable=True),
        sa.Column('status_observed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('first_activated_by', sa.TEXT(), nullable=True),
        sa.Column('subscribed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('has_lifetime_access', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('payment_fingerprint', sa.TEXT(), nullable=True),
        sa.Column('onboarding_completed', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('customer_id', name='uq_accounts_customer_id'),
    )
    op.create_index('idx_accounts_payment_fingerprint', 'accounts', ['payment_fingerprint'])
    op.create_index('idx_accounts_email', 'accounts', ['email'])

    # Unique external_event_id is the idempotency primitive for provider events
    op.create_table(
        'inbound_events',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('external_event_id', sa.TEXT(), nullable=False),
        sa.Column('event_type', sa.TEXT(), nullable=False),
        sa.Column('related_subscription_id', sa.TEXT(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('processed_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_event_id', name='uq_inbound_events_external_event_id'),
    )
    op.create_index('idx_inbound_events_subscription', 'inbound_events', ['related_subscription_id'])


def downgrade() -> None:
    op.drop_index('idx_inbound_events_subscription', table_name='inbound_events')
    op.drop_table('inbound_events')
    op.drop_index('idx_accounts_email', table_name='accounts')
    op.drop_index('idx_accounts_payment_fingerprint', table_name='accounts')
    op.drop_table('accounts')
