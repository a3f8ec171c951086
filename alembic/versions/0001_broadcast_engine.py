"""broadcast engine tables

Revision ID: 0001_broadcast_engine
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_broadcast_engine'
down_revision = None
branch_labels = None
depends_on = None


def _base_columns(tenant_nullable=False):
    return [
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=100), nullable=tenant_nullable),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    # Bots: one per tenant
    op.create_table(
        'bots',
        *_base_columns(),
        sa.Column('username', sa.String(length=100), nullable=True),
        sa.Column('token', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_bots_tenant_id', 'bots', ['tenant_id'], unique=True)

    # Campaigns: shots and downsells
    op.create_table(
        'campaigns',
        *_base_columns(),
        sa.Column('kind', sa.String(length=20), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('audience', sa.String(length=50), nullable=False),
        sa.Column('recency_days', sa.Integer(), nullable=True),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('parse_mode', sa.String(length=20), nullable=True),
        sa.Column('media_url', sa.String(length=1000), nullable=True),
        sa.Column('media_type', sa.String(length=20), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('button_text', sa.String(length=255), nullable=True),
        sa.Column('intro_text', sa.Text(), nullable=True),
        sa.Column('extra_plans', sa.JSON(), nullable=True),
        sa.Column('send_mode', sa.String(length=20), nullable=False, server_default='now'),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trigger', sa.String(length=30), nullable=True),
        sa.Column('delay_minutes', sa.Integer(), nullable=True),
        sa.Column('window_start_hour', sa.Integer(), nullable=True),
        sa.Column('window_end_hour', sa.Integer(), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=True),
        sa.Column('daily_cap', sa.Integer(), nullable=True),
        sa.Column('ab_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='draft'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_campaigns_tenant_id', 'campaigns', ['tenant_id'])
    op.create_index('ix_campaigns_kind', 'campaigns', ['kind'])

    op.create_table(
        'campaign_variants',
        *_base_columns(),
        sa.Column('campaign_id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(length=10), nullable=False),
        sa.Column('weight', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('media_url', sa.String(length=1000), nullable=True),
        sa.Column('media_type', sa.String(length=20), nullable=True),
        sa.ForeignKeyConstraint(['campaign_id'], ['campaigns.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('campaign_id', 'key', name='uq_variant_campaign_key'),
    )
    op.create_index('ix_campaign_variants_campaign_id', 'campaign_variants', ['campaign_id'])

    # Queue
    op.create_table(
        'queue_jobs',
        *_base_columns(),
        sa.Column('queue_type', sa.String(length=20), nullable=False),
        sa.Column('campaign_id', sa.Integer(), nullable=False),
        sa.Column('recipient_id', sa.BigInteger(), nullable=False),
        sa.Column('due_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('skip_reason', sa.String(length=100), nullable=True),
        sa.Column('sent_message_id', sa.BigInteger(), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('campaign_id', 'recipient_id', name='uq_queue_campaign_recipient'),
    )
    op.create_index('ix_queue_jobs_tenant_id', 'queue_jobs', ['tenant_id'])
    op.create_index('ix_queue_jobs_campaign_id', 'queue_jobs', ['campaign_id'])
    op.create_index('ix_queue_due', 'queue_jobs', ['queue_type', 'status', 'due_at'])

    # Ledger
    op.create_table(
        'sent_records',
        *_base_columns(),
        sa.Column('campaign_id', sa.Integer(), nullable=False),
        sa.Column('recipient_id', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('reason', sa.String(length=500), nullable=True),
        sa.Column('message_id', sa.BigInteger(), nullable=True),
        sa.Column('transaction_ref', sa.String(length=255), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('campaign_id', 'recipient_id', name='uq_sent_campaign_recipient'),
    )
    op.create_index('ix_sent_records_tenant_id', 'sent_records', ['tenant_id'])
    op.create_index('ix_sent_records_campaign_id', 'sent_records', ['campaign_id'])
    op.create_index('ix_sent_tenant_recipient', 'sent_records', ['tenant_id', 'recipient_id', 'sent_at'])

    # Contact ledger
    op.create_table(
        'contacts',
        *_base_columns(),
        sa.Column('recipient_id', sa.BigInteger(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('chat_state', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('last_interaction_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('blocked_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'recipient_id', name='uq_tenant_recipient'),
    )
    op.create_index('ix_contacts_tenant_id', 'contacts', ['tenant_id'])
    op.create_index('ix_contacts_recipient_id', 'contacts', ['recipient_id'])

    # Funnel history
    op.create_table(
        'funnel_events',
        *_base_columns(tenant_nullable=True),
        sa.Column('recipient_id', sa.BigInteger(), nullable=True),
        sa.Column('payload_id', sa.String(length=100), nullable=True),
        sa.Column('event_name', sa.String(length=50), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_funnel_events_tenant_id', 'funnel_events', ['tenant_id'])
    op.create_index('ix_funnel_events_recipient_id', 'funnel_events', ['recipient_id'])
    op.create_index('ix_funnel_events_payload_id', 'funnel_events', ['payload_id'])
    op.create_index('ix_funnel_events_event_name', 'funnel_events', ['event_name'])

    op.create_table(
        'payload_tracking',
        *_base_columns(),
        sa.Column('payload_id', sa.String(length=100), nullable=False),
        sa.Column('recipient_id', sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payload_tracking_tenant_id', 'payload_tracking', ['tenant_id'])
    op.create_index('ix_payload_tracking_payload_id', 'payload_tracking', ['payload_id'])
    op.create_index('ix_payload_tracking_recipient_id', 'payload_tracking', ['recipient_id'])

    op.create_table(
        'payment_transactions',
        *_base_columns(),
        sa.Column('recipient_id', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('value_cents', sa.Integer(), nullable=True),
        sa.Column('external_id', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_transactions_tenant_id', 'payment_transactions', ['tenant_id'])
    op.create_index('ix_payment_transactions_recipient_id', 'payment_transactions', ['recipient_id'])
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'])


def downgrade():
    for table in (
        'payment_transactions',
        'payload_tracking',
        'funnel_events',
        'contacts',
        'sent_records',
        'queue_jobs',
        'campaign_variants',
        'campaigns',
        'bots',
    ):
        op.drop_table(table)
