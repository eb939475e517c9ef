"""create payment orders and cards

Revision ID: 4b1e9c7a2f30
Revises:
Create Date: 2026-10-19 10:12:41.204118

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '4b1e9c7a2f30'
down_revision = None
branch_labels = None
depends_on = None

order_kind = sa.Enum('card_creation', 'card_topup', 'token_verification', name='orderkindenum')
order_status = sa.Enum('pending', 'processing', 'fulfilled', 'expired', 'failed', name='orderstatusenum')
card_status = sa.Enum('active', 'frozen', 'inactive', name='cardstatusenum')


def upgrade():
    op.create_table(
        'cards',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('provider_card_id', sa.String(length=128), nullable=False),
        sa.Column('title', sa.String(length=128), nullable=True),
        sa.Column('status', card_status, nullable=False),
        sa.Column('balance', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_card_id'),
    )
    with op.batch_alter_table('cards', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_cards_user_id'), ['user_id'], unique=False)

    op.create_table(
        'payment_orders',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('kind', order_kind, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('status', order_status, nullable=False),
        sa.Column('amount_fiat', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('amount_crypto', sa.Numeric(precision=20, scale=9), nullable=False),
        sa.Column('exchange_rate_at_creation', sa.Numeric(precision=20, scale=8), nullable=False),
        sa.Column('card_fee', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('top_up_amount', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('top_up_fee', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('expected_receiving_address', sa.String(length=64), nullable=False),
        sa.Column('card_title', sa.String(length=128), nullable=True),
        sa.Column('contact_email', sa.String(length=128), nullable=True),
        sa.Column('contact_phone', sa.String(length=32), nullable=True),
        sa.Column('target_card_id', sa.String(length=36), nullable=True),
        sa.Column('verification_memo', sa.String(length=128), nullable=True),
        sa.Column('live_key', sa.String(length=160), nullable=True),
        sa.Column('observed_tx_id', sa.String(length=128), nullable=True),
        sa.Column('observed_amount_crypto', sa.Numeric(precision=20, scale=9), nullable=True),
        sa.Column('sender_address', sa.String(length=64), nullable=True),
        sa.Column('observed_at', sa.DateTime(), nullable=True),
        sa.Column('token_gate_checked', sa.Boolean(), nullable=False),
        sa.Column('token_gate_passed', sa.Boolean(), nullable=True),
        sa.Column('token_balance_observed', sa.Numeric(precision=30, scale=9), nullable=True),
        sa.Column('dispatch_token', sa.String(length=36), nullable=True),
        sa.Column('dispatch_claimed_at', sa.DateTime(), nullable=True),
        sa.Column('fulfilled_card_id', sa.String(length=36), nullable=True),
        sa.Column('failure_reason', sa.String(length=64), nullable=True),
        sa.Column('failure_detail', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('fulfilled_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['target_card_id'], ['cards.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('observed_tx_id'),
        sa.UniqueConstraint('verification_memo'),
        sa.UniqueConstraint('live_key'),
    )
    with op.batch_alter_table('payment_orders', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_orders_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_orders_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_orders_expected_receiving_address'),
                              ['expected_receiving_address'], unique=False)

    op.create_table(
        'card_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('card_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('order_id', sa.String(length=36), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('credited_amount', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('provider_reference', sa.String(length=128), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['card_id'], ['cards.id']),
        sa.ForeignKeyConstraint(['order_id'], ['payment_orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
    )
    with op.batch_alter_table('card_transactions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_card_transactions_card_id'), ['card_id'], unique=False)


def downgrade():
    with op.batch_alter_table('card_transactions', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_card_transactions_card_id'))
    op.drop_table('card_transactions')

    with op.batch_alter_table('payment_orders', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_payment_orders_expected_receiving_address'))
        batch_op.drop_index(batch_op.f('ix_payment_orders_status'))
        batch_op.drop_index(batch_op.f('ix_payment_orders_user_id'))
    op.drop_table('payment_orders')

    with op.batch_alter_table('cards', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_cards_user_id'))
    op.drop_table('cards')

    bind = op.get_bind()
    card_status.drop(bind, checkfirst=True)
    order_status.drop(bind, checkfirst=True)
    order_kind.drop(bind, checkfirst=True)
