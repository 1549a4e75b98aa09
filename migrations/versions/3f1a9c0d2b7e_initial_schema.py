"""initial_schema

Revision ID: 3f1a9c0d2b7e
Revises:
Create Date: 2026-10-12 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f1a9c0d2b7e'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. solicitations (no FKs)
    op.create_table('solicitations',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('solicitation_number', sa.String(length=50), nullable=False),
    sa.Column('title', sa.String(length=300), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('deadline', sa.DateTime(), nullable=False),
    sa.Column('owner_id', sa.UUID(), nullable=False),
    sa.Column('closed_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint("status IN ('DRAFT','PUBLISHED','CLOSED','AWARDED','CANCELLED')", name='chk_solicitation_status'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('solicitation_number')
    )
    op.create_index('idx_solicitation_status_deadline', 'solicitations', ['status', 'deadline'], unique=False)
    op.create_index('idx_solicitation_owner', 'solicitations', ['owner_id'], unique=False)

    # 2. line_items
    op.create_table('line_items',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('solicitation_id', sa.UUID(), nullable=False),
    sa.Column('position', sa.Integer(), nullable=False),
    sa.Column('product_name', sa.String(length=300), nullable=False),
    sa.Column('quantity', sa.Integer(), nullable=False),
    sa.Column('unit', sa.String(length=30), nullable=True),
    sa.Column('ceiling_price_cents', sa.BigInteger(), nullable=True),
    sa.Column('instant_price_cents', sa.BigInteger(), nullable=True),
    sa.Column('item_status', sa.String(length=20), nullable=False),
    sa.Column('status_reason', sa.Text(), nullable=True),
    sa.CheckConstraint('quantity > 0', name='chk_line_item_qty'),
    sa.CheckConstraint('instant_price_cents IS NULL OR ceiling_price_cents IS NULL OR instant_price_cents <= ceiling_price_cents', name='chk_line_item_instant_le_ceiling'),
    sa.CheckConstraint("item_status IN ('PENDING','QUOTED','AWARDED','CANCELLED','OUT_OF_STOCK')", name='chk_line_item_status'),
    sa.ForeignKeyConstraint(['solicitation_id'], ['solicitations.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_line_item_solicitation', 'line_items', ['solicitation_id'], unique=False)

    # 3. quotes + quote_items
    op.create_table('quotes',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('solicitation_id', sa.UUID(), nullable=False),
    sa.Column('supplier_id', sa.UUID(), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('price_cents', sa.BigInteger(), nullable=False),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('submitted_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint("status IN ('SUBMITTED','AWARDED','REJECTED')", name='chk_quote_status'),
    sa.ForeignKeyConstraint(['solicitation_id'], ['solicitations.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_quote_solicitation_supplier', 'quotes', ['solicitation_id', 'supplier_id'], unique=False)

    op.create_table('quote_items',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('quote_id', sa.UUID(), nullable=False),
    sa.Column('line_item_id', sa.UUID(), nullable=False),
    sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint('unit_price_cents > 0', name='chk_quote_item_price'),
    sa.ForeignKeyConstraint(['line_item_id'], ['line_items.id'], ),
    sa.ForeignKeyConstraint(['quote_id'], ['quotes.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('quote_id', 'line_item_id', name='uq_quote_item_line')
    )
    op.create_index('idx_quote_item_line', 'quote_items', ['line_item_id'], unique=False)

    # 4. awards + award_items
    op.create_table('awards',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('solicitation_id', sa.UUID(), nullable=False),
    sa.Column('supplier_id', sa.UUID(), nullable=False),
    sa.Column('quote_id', sa.UUID(), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('final_price_cents', sa.BigInteger(), nullable=False),
    sa.Column('reason', sa.Text(), nullable=True),
    sa.Column('cancellation_reason', sa.String(length=100), nullable=True),
    sa.Column('cancelled_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint("status IN ('ACTIVE','CANCELLED')", name='chk_award_status'),
    sa.ForeignKeyConstraint(['quote_id'], ['quotes.id'], ),
    sa.ForeignKeyConstraint(['solicitation_id'], ['solicitations.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    # At most one ACTIVE award per (solicitation, supplier); cancelled rows are history
    op.create_index(
        'uq_award_active_supplier', 'awards', ['solicitation_id', 'supplier_id'],
        unique=True, postgresql_where=sa.text("status = 'ACTIVE'"),
    )
    op.create_index('idx_award_supplier', 'awards', ['supplier_id'], unique=False)

    op.create_table('award_items',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('award_id', sa.UUID(), nullable=False),
    sa.Column('line_item_id', sa.UUID(), nullable=False),
    sa.Column('quote_item_id', sa.UUID(), nullable=False),
    sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
    sa.Column('quantity', sa.Integer(), nullable=False),
    sa.ForeignKeyConstraint(['award_id'], ['awards.id'], ondelete='CASCADE'),
    sa.ForeignKeyConstraint(['line_item_id'], ['line_items.id'], ),
    sa.ForeignKeyConstraint(['quote_item_id'], ['quote_items.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('award_id', 'line_item_id', name='uq_award_item_line')
    )
    op.create_index('idx_award_item_line', 'award_items', ['line_item_id'], unique=False)

    # 5. fulfilment
    op.create_table('stock_orders',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('supplier_id', sa.UUID(), nullable=False),
    sa.Column('buyer_id', sa.UUID(), nullable=False),
    sa.Column('product_name', sa.String(length=300), nullable=False),
    sa.Column('quantity', sa.Integer(), nullable=False),
    sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
    sa.Column('ordered_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint('quantity > 0', name='chk_stock_order_qty'),
    sa.CheckConstraint('unit_price_cents > 0', name='chk_stock_order_price'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_stock_order_supplier_date', 'stock_orders', ['supplier_id', 'ordered_at'], unique=False)

    op.create_table('shipments',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('supplier_id', sa.UUID(), nullable=False),
    sa.Column('line_item_id', sa.UUID(), nullable=True),
    sa.Column('stock_order_id', sa.UUID(), nullable=True),
    sa.Column('tracking_number', sa.String(length=100), nullable=True),
    sa.Column('carrier', sa.String(length=100), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint('(line_item_id IS NULL) <> (stock_order_id IS NULL)', name='chk_shipment_target'),
    sa.ForeignKeyConstraint(['line_item_id'], ['line_items.id'], ),
    sa.ForeignKeyConstraint(['stock_order_id'], ['stock_orders.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_shipment_line_item', 'shipments', ['line_item_id'], unique=False)
    op.create_index('idx_shipment_stock_order', 'shipments', ['stock_order_id'], unique=False)

    op.create_table('settlements',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('shipment_id', sa.UUID(), nullable=False),
    sa.Column('amount_cents', sa.BigInteger(), nullable=False),
    sa.Column('payment_receipt_key', sa.String(length=500), nullable=True),
    sa.Column('paid_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['shipment_id'], ['shipments.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_settlement_shipment', 'settlements', ['shipment_id'], unique=False)

    # 6. audit + notifications
    op.create_table('audit_logs',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('actor_id', sa.UUID(), nullable=True),
    sa.Column('action', sa.String(length=100), nullable=False),
    sa.Column('resource_type', sa.String(length=50), nullable=False),
    sa.Column('resource_id', sa.UUID(), nullable=False),
    sa.Column('request_id', sa.String(length=64), nullable=True),
    sa.Column('details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_audit_resource', 'audit_logs', ['resource_type', 'resource_id'], unique=False)
    op.create_index('idx_audit_actor', 'audit_logs', ['actor_id'], unique=False)
    op.create_index('idx_audit_created', 'audit_logs', [sa.text('created_at DESC')], unique=False)

    op.create_table('app_notifications',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('user_id', sa.UUID(), nullable=True),
    sa.Column('role', sa.String(length=30), nullable=True),
    sa.Column('title', sa.String(length=255), nullable=False),
    sa.Column('body', sa.Text(), nullable=False),
    sa.Column('type', sa.String(length=50), nullable=False),
    sa.Column('entity_id', sa.String(length=50), nullable=True),
    sa.Column('is_read', sa.Boolean(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_notifications_user', 'app_notifications', ['user_id'], unique=False)
    op.create_index('idx_notifications_role', 'app_notifications', ['role'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_notifications_role', table_name='app_notifications')
    op.drop_index('idx_notifications_user', table_name='app_notifications')
    op.drop_table('app_notifications')
    op.drop_index('idx_audit_created', table_name='audit_logs')
    op.drop_index('idx_audit_actor', table_name='audit_logs')
    op.drop_index('idx_audit_resource', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('idx_settlement_shipment', table_name='settlements')
    op.drop_table('settlements')
    op.drop_index('idx_shipment_stock_order', table_name='shipments')
    op.drop_index('idx_shipment_line_item', table_name='shipments')
    op.drop_table('shipments')
    op.drop_index('idx_stock_order_supplier_date', table_name='stock_orders')
    op.drop_table('stock_orders')
    op.drop_index('idx_award_item_line', table_name='award_items')
    op.drop_table('award_items')
    op.drop_index('idx_award_supplier', table_name='awards')
    op.drop_index('uq_award_active_supplier', table_name='awards')
    op.drop_table('awards')
    op.drop_index('idx_quote_item_line', table_name='quote_items')
    op.drop_table('quote_items')
    op.drop_index('idx_quote_solicitation_supplier', table_name='quotes')
    op.drop_table('quotes')
    op.drop_index('idx_line_item_solicitation', table_name='line_items')
    op.drop_table('line_items')
    op.drop_index('idx_solicitation_owner', table_name='solicitations')
    op.drop_index('idx_solicitation_status_deadline', table_name='solicitations')
    op.drop_table('solicitations')
