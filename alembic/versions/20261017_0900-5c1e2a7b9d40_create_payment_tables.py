"""create_payment_tables

Revision ID: 5c1e2a7b9d40
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5c1e2a7b9d40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'payment_orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False, comment='订单号（渠道前缀）'),
        sa.Column('provider', sa.String(length=20), nullable=False, comment='wechat/alipay/stripe/paypal'),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='订单金额'),
        sa.Column('amount_unit', sa.String(length=10), nullable=False, server_default='major', comment='minor/major'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('billing_cycle', sa.String(length=20), nullable=False, comment='monthly/yearly'),
        sa.Column('billing_days', sa.Integer(), nullable=False, comment='会员天数'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='pending/paid/failed/refunded'),
        sa.Column('provider_transaction_id', sa.String(length=128), nullable=True, comment='渠道交易号'),
        sa.Column('provider_order_ref', sa.String(length=128), nullable=True,
                  comment='收银台 session id / PayPal order id'),
        sa.Column('needs_review', sa.Boolean(), nullable=False, server_default=sa.false(), comment='需人工复核'),
        sa.Column('review_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='plan/cycle'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
    )
    op.create_index('ix_payment_orders_provider', 'payment_orders', ['provider'])
    op.create_index('ix_payment_orders_user_id', 'payment_orders', ['user_id'])
    op.create_index('ix_payment_orders_status', 'payment_orders', ['status'])
    op.create_index('ix_payment_orders_user_created', 'payment_orders', ['user_id', 'created_at'])
    op.create_index('ix_payment_orders_provider_ref', 'payment_orders', ['provider', 'provider_order_ref'])
    op.create_index('ix_payment_orders_status_created', 'payment_orders', ['status', 'created_at'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='每个用户一条'),
        sa.Column('plan', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('source_order_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('event_id', sa.String(length=191), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_events_provider_event'),
        comment='回调幂等台账',
    )


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_table('subscriptions')
    op.drop_index('ix_payment_orders_status_created', table_name='payment_orders')
    op.drop_index('ix_payment_orders_provider_ref', table_name='payment_orders')
    op.drop_index('ix_payment_orders_user_created', table_name='payment_orders')
    op.drop_index('ix_payment_orders_status', table_name='payment_orders')
    op.drop_index('ix_payment_orders_user_id', table_name='payment_orders')
    op.drop_index('ix_payment_orders_provider', table_name='payment_orders')
    op.drop_table('payment_orders')
