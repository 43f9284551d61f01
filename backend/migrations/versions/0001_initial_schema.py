"""initial service desk schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('companies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime()),
    )

    op.create_table('branches',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('code', sa.String(length=16), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_branches_company_id', 'branches', ['company_id'])

    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id')),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=128), nullable=False, unique=True),
        sa.Column('role', sa.String(length=32), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
    )
    op.create_index('ix_users_company_id', 'users', ['company_id'])
    op.create_index('ix_users_branch_id', 'users', ['branch_id'])
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table('customers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('phone', sa.String(length=32)),
        sa.Column('email', sa.String(length=128)),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_customers_company_id', 'customers', ['company_id'])

    op.create_table('customer_devices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('brand_name', sa.String(length=64), nullable=False),
        sa.Column('model_name', sa.String(length=64), nullable=False),
        sa.Column('imei', sa.String(length=32)),
    )
    op.create_index('ix_customer_devices_company_id', 'customer_devices', ['company_id'])
    op.create_index('ix_customer_devices_customer_id', 'customer_devices', ['customer_id'])

    op.create_table('faults',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('code', sa.String(length=32)),
        sa.Column('default_price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
    )
    op.create_index('ix_faults_company_id', 'faults', ['company_id'])

    op.create_table('accessories',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
    )

    op.create_table('damage_conditions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
    )
    op.create_index('ix_damage_conditions_company_id', 'damage_conditions', ['company_id'])

    op.create_table('payment_methods',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
    )
    op.create_index('ix_payment_methods_company_id', 'payment_methods', ['company_id'])

    op.create_table('document_sequences',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id'), nullable=False),
        sa.Column('document_type', sa.String(length=32), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('next_value', sa.Integer(), nullable=False, server_default='1'),
        sa.UniqueConstraint('company_id', 'branch_id', 'document_type', 'year', name='uq_document_sequence'),
    )

    op.create_table('items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('item_name', sa.String(length=150), nullable=False),
        sa.Column('item_code', sa.String(length=64), nullable=False),
    )
    op.create_index('ix_items_company_id', 'items', ['company_id'])
    op.create_index('ix_items_item_name', 'items', ['item_name'])
    op.create_index('ix_items_item_code', 'items', ['item_code'])

    op.create_table('branch_inventory',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id'), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('items.id'), nullable=False),
        sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('updated_at', sa.DateTime()),
        sa.UniqueConstraint('branch_id', 'item_id', name='uq_branch_inventory_item'),
        sa.CheckConstraint('stock_quantity >= 0', name='ck_branch_inventory_stock_non_negative'),
    )
    op.create_index('ix_branch_inventory_company_id', 'branch_inventory', ['company_id'])
    op.create_index('ix_branch_inventory_branch_id', 'branch_inventory', ['branch_id'])
    op.create_index('ix_branch_inventory_item_id', 'branch_inventory', ['item_id'])

    op.create_table('stock_movements',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('branch_inventory_id', sa.Integer(), sa.ForeignKey('branch_inventory.id'), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=False),
        sa.Column('movement_type', sa.String(length=32), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('previous_qty', sa.Integer(), nullable=False),
        sa.Column('new_qty', sa.Integer(), nullable=False),
        sa.Column('reference_type', sa.String(length=64)),
        sa.Column('reference_id', sa.Integer()),
        sa.Column('notes', sa.String(length=255)),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime()),
    )
    for col in ('branch_inventory_id', 'company_id', 'branch_id', 'movement_type', 'reference_id', 'created_at'):
        op.create_index(f'ix_stock_movements_{col}', 'stock_movements', [col])

    op.create_table('legacy_parts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(length=150), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_legacy_parts_company_id', 'legacy_parts', ['company_id'])

    op.create_table('service_tickets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_number', sa.String(length=64), nullable=False),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id'), nullable=False),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('customer_device_id', sa.Integer(), sa.ForeignKey('customer_devices.id'), nullable=False),
        sa.Column('device_model', sa.String(length=160), nullable=False),
        sa.Column('damage_condition', sa.Text()),
        sa.Column('diagnosis', sa.Text()),
        sa.Column('device_password', sa.String(length=64)),
        sa.Column('device_pattern', sa.String(length=64)),
        sa.Column('device_condition', sa.Text()),
        sa.Column('intake_notes', sa.Text()),
        sa.Column('data_warranty_accepted', sa.Boolean(), server_default=sa.text('0')),
        sa.Column('send_sms_notification', sa.Boolean(), server_default=sa.text('1')),
        sa.Column('send_whatsapp_notification', sa.Boolean(), server_default=sa.text('0')),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='PENDING'),
        sa.Column('estimated_cost_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('actual_cost_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('labour_charge_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('advance_payment_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_warranty_repair', sa.Boolean(), server_default=sa.text('0')),
        sa.Column('warranty_reason', sa.String(length=255)),
        sa.Column('is_repeated_service', sa.Boolean(), server_default=sa.text('0')),
        sa.Column('previous_ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='SET NULL')),
        sa.Column('assigned_to_id', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('completed_at', sa.DateTime()),
        sa.Column('delivered_at', sa.DateTime()),
        sa.Column('not_serviceable_reason', sa.Text()),
        sa.Column('device_returned_at', sa.DateTime()),
        sa.Column('device_returned_by_id', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('refund_amount_cents', sa.Integer()),
        sa.Column('refund_reason', sa.Text()),
        sa.Column('refund_payment_method_id', sa.Integer(), sa.ForeignKey('payment_methods.id')),
        sa.Column('refunded_at', sa.DateTime()),
        sa.Column('refunded_by_id', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
        sa.UniqueConstraint('ticket_number', name='uq_service_ticket_number'),
    )
    for col in ('company_id', 'branch_id', 'customer_id', 'customer_device_id', 'status', 'assigned_to_id', 'created_at'):
        op.create_index(f'ix_service_tickets_{col}', 'service_tickets', [col])

    op.create_table('part_usages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('branch_inventory_id', sa.Integer(), sa.ForeignKey('branch_inventory.id')),
        sa.Column('legacy_part_id', sa.Integer(), sa.ForeignKey('legacy_parts.id')),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('items.id')),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_extra_spare', sa.Boolean(), server_default=sa.text('0')),
        sa.Column('is_approved', sa.Boolean(), server_default=sa.text('0')),
        sa.Column('approval_method', sa.String(length=32)),
        sa.Column('approval_note', sa.Text()),
        sa.Column('approved_at', sa.DateTime()),
        sa.Column('approved_by_id', sa.Integer()),
        sa.Column('fault_tag', sa.String(length=128)),
        sa.Column('created_at', sa.DateTime()),
        sa.CheckConstraint('(branch_inventory_id IS NULL) != (legacy_part_id IS NULL)', name='ck_part_usage_single_source'),
        sa.CheckConstraint('quantity > 0', name='ck_part_usage_quantity_positive'),
    )
    op.create_index('ix_part_usages_ticket_id', 'part_usages', ['ticket_id'])
    op.create_index('ix_part_usages_branch_inventory_id', 'part_usages', ['branch_inventory_id'])

    op.create_table('ticket_faults',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('fault_id', sa.Integer(), sa.ForeignKey('faults.id'), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('ticket_id', 'fault_id', name='uq_ticket_fault'),
    )
    op.create_table('ticket_accessories',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('accessory_id', sa.Integer(), sa.ForeignKey('accessories.id'), nullable=False),
    )
    op.create_table('ticket_damage_conditions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('damage_condition_id', sa.Integer(), sa.ForeignKey('damage_conditions.id'), nullable=False),
    )
    op.create_table('status_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('notes', sa.Text()),
        sa.Column('changed_by_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_table('ticket_notes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('note', sa.Text(), nullable=False),
        sa.Column('created_by_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_table('payment_entries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payment_method_id', sa.Integer(), sa.ForeignKey('payment_methods.id'), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('notes', sa.String(length=255)),
        sa.Column('transaction_id', sa.String(length=128)),
        sa.Column('payment_date', sa.DateTime()),
        sa.Column('received_by_id', sa.Integer(), nullable=False),
    )
    op.create_table('ticket_images',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('image_url', sa.String(length=512), nullable=False),
        sa.Column('caption', sa.String(length=255)),
        sa.Column('uploaded_by_id', sa.Integer(), nullable=False),
        sa.Column('uploaded_at', sa.DateTime()),
    )
    for table in ('ticket_faults', 'ticket_accessories', 'ticket_damage_conditions', 'status_history',
                  'ticket_notes', 'payment_entries', 'ticket_images'):
        op.create_index(f'ix_{table}_ticket_id', table, ['ticket_id'])

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer()),
        sa.Column('actor_user_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('entity', sa.String(length=64)),
        sa.Column('entity_id', sa.String(length=64)),
        sa.Column('meta', sa.JSON()),
        sa.Column('created_at', sa.DateTime()),
    )
    for col in ('company_id', 'actor_user_id', 'action', 'entity_id'):
        op.create_index(f'ix_audit_logs_{col}', 'audit_logs', [col])


def downgrade():
    for table in (
        'audit_logs', 'ticket_images', 'payment_entries', 'ticket_notes', 'status_history',
        'ticket_damage_conditions', 'ticket_accessories', 'ticket_faults', 'part_usages', 'service_tickets',
        'legacy_parts', 'stock_movements', 'branch_inventory', 'items', 'document_sequences',
        'payment_methods', 'damage_conditions', 'accessories', 'faults', 'customer_devices', 'customers',
        'users', 'branches', 'companies',
    ):
        op.drop_table(table)
