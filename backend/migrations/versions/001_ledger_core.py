"""Create shipment ledger tables

Suppliers, products, shipments and their stock items, carryover edges,
invoices with their allocation lines, and the expense ledger.

Revision ID: 001_ledger_core
Revises:
Create Date: 2025-01-01
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_ledger_core'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'suppliers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('opening_balance', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('sku', sa.String(50), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('name_en', sa.String(255), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'shipments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('number', sa.String(50), nullable=False, unique=True),
        sa.Column('supplier_id', sa.Integer(), nullable=False),

        # Consumption order, assigned once
        sa.Column('fifo_sequence', sa.Integer(), nullable=False),
        sa.Column('arrival_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('notes', sa.Text(), nullable=True),

        # Settlement audit
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        sa.Column('settled_by', sa.String(100), nullable=True),

        # Settlement totals
        sa.Column('total_sales', sa.Numeric(15, 2), nullable=True),
        sa.Column('total_sold_quantity', sa.Integer(), nullable=True),
        sa.Column('total_wastage', sa.Numeric(15, 3), nullable=True),
        sa.Column('total_carryover_out', sa.Integer(), nullable=True),
        sa.Column('total_supplier_expenses', sa.Numeric(15, 2), nullable=True),
        sa.Column('total_supplier_payments', sa.Numeric(15, 2), nullable=True),
        sa.Column('late_returns_value', sa.Numeric(15, 2), nullable=True),
        sa.Column('commission_rate', sa.Numeric(6, 4), nullable=True),
        sa.Column('net_sales', sa.Numeric(15, 2), nullable=True),
        sa.Column('company_commission', sa.Numeric(15, 2), nullable=True),

        # Balance chain
        sa.Column('previous_supplier_balance', sa.Numeric(15, 2), nullable=True),
        sa.Column('final_supplier_balance', sa.Numeric(15, 2), nullable=True),

        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('created_by', sa.String(100), nullable=True),

        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id'], name='fk_shipments_supplier'),
    )
    op.create_index('ix_shipments_supplier_id', 'shipments', ['supplier_id'])
    op.create_index('ix_shipments_fifo_sequence', 'shipments', ['fifo_sequence'])
    op.create_index('ix_shipments_status', 'shipments', ['status'])

    op.create_table(
        'shipment_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('shipment_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('weight_per_unit', sa.Numeric(8, 3), nullable=False),
        sa.Column('weight_label', sa.String(50), nullable=True),

        # Carton counters
        sa.Column('cartons', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('initial_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sold_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('carryover_in_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('carryover_out_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('remaining_quantity', sa.Integer(), nullable=False, server_default='0'),

        sa.Column('wastage_quantity', sa.Numeric(10, 3), nullable=False, server_default='0'),
        sa.Column('unit_cost', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),

        sa.ForeignKeyConstraint(['shipment_id'], ['shipments.id'], name='fk_shipment_items_shipment'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_shipment_items_product'),
        sa.CheckConstraint('remaining_quantity >= 0', name='ck_shipment_items_remaining_non_negative'),
        sa.CheckConstraint(
            'remaining_quantity = cartons + carryover_in_quantity - sold_quantity - carryover_out_quantity',
            name='ck_shipment_items_conservation',
        ),
        sa.CheckConstraint('initial_quantity = cartons + carryover_in_quantity', name='ck_shipment_items_initial'),
    )
    op.create_index('ix_shipment_items_shipment_id', 'shipment_items', ['shipment_id'])
    op.create_index('ix_shipment_items_product_id', 'shipment_items', ['product_id'])
    op.create_index('ix_shipment_items_fifo', 'shipment_items', ['product_id', 'remaining_quantity'])

    op.create_table(
        'carryovers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('from_shipment_id', sa.Integer(), nullable=False),
        sa.Column('from_shipment_item_id', sa.Integer(), nullable=False),
        sa.Column('to_shipment_id', sa.Integer(), nullable=False),
        sa.Column('to_shipment_item_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('invoice_line_id', sa.Integer(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(30), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('created_by', sa.String(100), nullable=True),

        sa.ForeignKeyConstraint(['from_shipment_id'], ['shipments.id'], name='fk_carryovers_from_shipment'),
        sa.ForeignKeyConstraint(['from_shipment_item_id'], ['shipment_items.id'],
                                name='fk_carryovers_from_item'),
        sa.ForeignKeyConstraint(['to_shipment_id'], ['shipments.id'], name='fk_carryovers_to_shipment'),
        sa.ForeignKeyConstraint(['to_shipment_item_id'], ['shipment_items.id'], name='fk_carryovers_to_item'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_carryovers_product'),
        sa.CheckConstraint('quantity > 0', name='ck_carryovers_quantity_positive'),
    )
    op.create_index('ix_carryovers_from_shipment_id', 'carryovers', ['from_shipment_id'])
    op.create_index('ix_carryovers_to_shipment_id', 'carryovers', ['to_shipment_id'])
    op.create_index('ix_carryovers_reason', 'carryovers', ['reason'])

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('number', sa.String(50), nullable=False, unique=True),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('invoice_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'invoice_lines',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('shipment_item_id', sa.Integer(), nullable=False),
        sa.Column('cartons', sa.Integer(), nullable=False),
        sa.Column('weight', sa.Numeric(10, 3), nullable=False),
        sa.Column('unit_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('subtotal', sa.Numeric(15, 2), nullable=False),
        sa.Column('line_date', sa.Date(), nullable=True),
        sa.Column('returned_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reversed_at', sa.DateTime(), nullable=True),
        sa.Column('reversed_by', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('created_by', sa.String(100), nullable=True),

        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], name='fk_invoice_lines_invoice'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_invoice_lines_product'),
        sa.ForeignKeyConstraint(['shipment_item_id'], ['shipment_items.id'],
                                name='fk_invoice_lines_shipment_item'),
        sa.CheckConstraint('cartons > 0', name='ck_invoice_lines_cartons_positive'),
        sa.CheckConstraint('returned_quantity >= 0 AND returned_quantity <= cartons',
                           name='ck_invoice_lines_returned_range'),
    )
    op.create_index('ix_invoice_lines_invoice_id', 'invoice_lines', ['invoice_id'])
    op.create_index('ix_invoice_lines_shipment_item_id', 'invoice_lines', ['shipment_item_id'])

    # carryovers is created first, so its late-return link is added here
    op.create_foreign_key(
        'fk_carryovers_invoice_line', 'carryovers', 'invoice_lines', ['invoice_line_id'], ['id']
    )
    op.create_index('ix_carryovers_invoice_line_id', 'carryovers', ['invoice_line_id'])

    op.create_table(
        'expenses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('supplier_id', sa.Integer(), nullable=True),
        sa.Column('shipment_id', sa.Integer(), nullable=True),
        sa.Column('kind', sa.String(30), nullable=False),
        sa.Column('amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('expense_date', sa.Date(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),

        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id'], name='fk_expenses_supplier'),
        sa.ForeignKeyConstraint(['shipment_id'], ['shipments.id'], name='fk_expenses_shipment'),
    )
    op.create_index('ix_expenses_supplier_id', 'expenses', ['supplier_id'])
    op.create_index('ix_expenses_shipment_id', 'expenses', ['shipment_id'])
    op.create_index('ix_expenses_kind', 'expenses', ['kind'])
    op.create_index('ix_expenses_expense_date', 'expenses', ['expense_date'])


def downgrade() -> None:
    op.drop_constraint('fk_carryovers_invoice_line', 'carryovers', type_='foreignkey')
    op.drop_table('expenses')
    op.drop_table('invoice_lines')
    op.drop_table('invoices')
    op.drop_table('carryovers')
    op.drop_table('shipment_items')
    op.drop_table('shipments')
    op.drop_table('products')
    op.drop_table('suppliers')
