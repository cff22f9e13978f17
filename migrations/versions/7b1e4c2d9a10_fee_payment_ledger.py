"""fee templates, fees, gateway credentials, transactions, invoices, ledger

Revision ID: 7b1e4c2d9a10
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "7b1e4c2d9a10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'campuses',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('address', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('tax_id', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'students',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('campus_id', sa.String(length=36), sa.ForeignKey('campuses.id'), nullable=False),
        sa.Column('class_id', sa.String(length=64), nullable=False),
        sa.Column('admission_no', sa.String(length=50), nullable=True),
        sa.Column('name', sa.String(length=150), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('guardian_name', sa.String(length=150), nullable=True),
        sa.Column('guardian_email', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
    )
    op.create_index('ix_students_campus_id', 'students', ['campus_id'])
    op.create_index('ix_students_class_id', 'students', ['class_id'])

    op.create_table(
        'gateway_credentials',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('campus_id', sa.String(length=36), sa.ForeignKey('campuses.id'), nullable=False),
        sa.Column('gateway', sa.String(length=20), nullable=False),
        sa.Column('key_id', sa.String(length=120), nullable=True),
        sa.Column('encrypted_secrets', sa.Text(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('rotated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('campus_id', 'gateway', name='uq_gateway_credentials_campus_gateway'),
    )
    op.create_index('ix_gateway_credentials_campus_id', 'gateway_credentials', ['campus_id'])

    op.create_table(
        'fee_templates',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('campus_id', sa.String(length=36), sa.ForeignKey('campuses.id'), nullable=False),
        sa.Column('class_id', sa.String(length=64), nullable=False),
        sa.Column('academic_year', sa.String(length=16), nullable=False),
        sa.Column('template_name', sa.String(length=200), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('items', sa.JSON(), nullable=False),
        sa.Column('total_amount', sa.BigInteger(), nullable=False),
        sa.Column('due_date', sa.DateTime(), nullable=False),
        sa.Column('is_installment_enabled', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('installments', sa.JSON(), nullable=False),
        sa.Column('applicable_students', sa.JSON(), nullable=False),
        sa.Column('excluded_student_ids', sa.JSON(), nullable=False),
        sa.Column('auto_late_fee', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('late_fee_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('late_fee_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('grace_period_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('discount_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('early_payment_deadline', sa.DateTime(), nullable=True),
        sa.Column('auto_generate', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_fee_templates_campus_id', 'fee_templates', ['campus_id'])
    op.create_index('ix_fee_templates_class_id', 'fee_templates', ['class_id'])
    op.create_index('ix_fee_templates_academic_year', 'fee_templates', ['academic_year'])

    op.create_table(
        'fees',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('campus_id', sa.String(length=36), sa.ForeignKey('campuses.id'), nullable=False),
        sa.Column('student_id', sa.String(length=36), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('class_id', sa.String(length=64), nullable=True),
        sa.Column('academic_year', sa.String(length=16), nullable=True),
        sa.Column('fee_template_id', sa.String(length=36), sa.ForeignKey('fee_templates.id'), nullable=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('items', sa.JSON(), nullable=False),
        sa.Column('installments', sa.JSON(), nullable=False),
        sa.Column('is_installment_enabled', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('total_amount', sa.BigInteger(), nullable=False),
        sa.Column('paid_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('late_fee_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('discount_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('discount_locked', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('due_amount', sa.BigInteger(), nullable=False),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='unpaid'),
        sa.Column('due_date', sa.DateTime(), nullable=False),
        sa.Column('auto_late_fee', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('late_fee_fixed', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('late_fee_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('grace_period_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_fixed', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('discount_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('early_payment_deadline', sa.DateTime(), nullable=True),
        sa.Column('reminder_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_reminder_at', sa.DateTime(), nullable=True),
        sa.Column('last_payment_at', sa.DateTime(), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_fees_campus_id', 'fees', ['campus_id'])
    op.create_index('ix_fees_student_id', 'fees', ['student_id'])
    op.create_index('ix_fees_academic_year', 'fees', ['academic_year'])
    op.create_index('ix_fees_fee_template_id', 'fees', ['fee_template_id'])
    op.create_index('ix_fees_payment_status', 'fees', ['payment_status'])
    op.create_index('ix_fees_due_date', 'fees', ['due_date'])
    op.create_index('ix_fees_is_deleted', 'fees', ['is_deleted'])

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('campus_id', sa.String(length=36), sa.ForeignKey('campuses.id'), nullable=False),
        sa.Column('fee_id', sa.String(length=36), sa.ForeignKey('fees.id'), nullable=False),
        sa.Column('student_id', sa.String(length=36), nullable=False),
        sa.Column('gateway', sa.String(length=20), nullable=False),
        sa.Column('gateway_order_id', sa.String(length=100), nullable=False),
        sa.Column('gateway_payment_id', sa.String(length=100), nullable=True),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('refunded_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='created'),
        sa.Column('webhook_verified', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('client_payload', sa.JSON(), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('initiated_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('authorized_at', sa.DateTime(), nullable=True),
        sa.Column('captured_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('gateway', 'gateway_order_id', name='uq_payment_transactions_gateway_order'),
    )
    op.create_index('ix_payment_transactions_campus_id', 'payment_transactions', ['campus_id'])
    op.create_index('ix_payment_transactions_fee_id', 'payment_transactions', ['fee_id'])
    op.create_index('ix_payment_transactions_student_id', 'payment_transactions', ['student_id'])
    op.create_index('ix_payment_transactions_gateway_order_id', 'payment_transactions', ['gateway_order_id'])
    op.create_index('ix_payment_transactions_gateway_payment_id', 'payment_transactions', ['gateway_payment_id'])
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'])

    op.create_table(
        'payment_refunds',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('transaction_id', sa.String(length=36), sa.ForeignKey('payment_transactions.id'), nullable=False),
        sa.Column('gateway_refund_id', sa.String(length=100), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('transaction_id', 'gateway_refund_id', name='uq_payment_refunds_txn_refund'),
    )
    op.create_index('ix_payment_refunds_transaction_id', 'payment_refunds', ['transaction_id'])

    op.create_table(
        'payment_invoices',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('invoice_number', sa.String(length=32), nullable=False),
        sa.Column('campus_id', sa.String(length=36), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False, server_default='payment'),
        sa.Column('source_key', sa.String(length=160), nullable=False, unique=True),
        sa.Column('transaction_id', sa.String(length=36), sa.ForeignKey('payment_transactions.id'), nullable=False),
        sa.Column('supersedes_invoice_id', sa.String(length=36), sa.ForeignKey('payment_invoices.id'), nullable=True),
        sa.Column('fee_id', sa.String(length=36), nullable=False),
        sa.Column('student_id', sa.String(length=36), nullable=False),
        sa.Column('invoice_date', sa.DateTime(), nullable=False),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('line_items', sa.JSON(), nullable=False),
        sa.Column('subtotal', sa.BigInteger(), nullable=False),
        sa.Column('late_fee', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('discount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('tax_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('tax_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.BigInteger(), nullable=False),
        sa.Column('amount_paid', sa.BigInteger(), nullable=False),
        sa.Column('balance_due', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('payment_status', sa.String(length=16), nullable=False),
        sa.Column('payment_date', sa.DateTime(), nullable=True),
        sa.Column('payment_method', sa.String(length=20), nullable=True),
        sa.Column('gateway_order_id', sa.String(length=100), nullable=True),
        sa.Column('gateway_payment_id', sa.String(length=100), nullable=True),
        sa.Column('student_snapshot', sa.JSON(), nullable=False),
        sa.Column('school_snapshot', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('campus_id', 'invoice_number', name='uq_payment_invoices_campus_number'),
    )
    op.create_index('ix_payment_invoices_campus_id', 'payment_invoices', ['campus_id'])
    op.create_index('ix_payment_invoices_transaction_id', 'payment_invoices', ['transaction_id'])
    op.create_index('ix_payment_invoices_fee_id', 'payment_invoices', ['fee_id'])
    op.create_index('ix_payment_invoices_student_id', 'payment_invoices', ['student_id'])

    op.create_table(
        'invoice_sequences',
        sa.Column('campus_id', sa.String(length=36), primary_key=True),
        sa.Column('year', sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column('last_value', sa.Integer(), nullable=False, server_default='0'),
    )

    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('campus_id', sa.String(length=36), nullable=False),
        sa.Column('student_id', sa.String(length=36), nullable=False),
        sa.Column('fee_id', sa.String(length=36), nullable=False),
        sa.Column('ts', sa.DateTime(), nullable=False),
        sa.Column('entry_type', sa.Enum('debit', 'credit', name='ledger_entry_type'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('ref', sa.String(length=100), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('link_type', sa.String(length=32), nullable=True),
        sa.Column('link_id', sa.String(length=160), nullable=True),
    )
    op.create_index('idx_ledger_campus_student', 'ledger_entries', ['campus_id', 'student_id', 'ts'])
    op.create_index('idx_ledger_link', 'ledger_entries', ['link_type', 'link_id'])
    op.create_index('ix_ledger_entries_fee_id', 'ledger_entries', ['fee_id'])

    op.create_table(
        'reminder_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('fee_id', sa.String(length=36), nullable=False),
        sa.Column('student_id', sa.String(length=36), nullable=False),
        sa.Column('channel', sa.String(length=20), nullable=False),
        sa.Column('recipient', sa.String(length=255), nullable=True),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('subject', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('error', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_reminder_logs_fee_id', 'reminder_logs', ['fee_id'])

    op.create_table(
        'reconciliation_issues',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('kind', sa.String(length=40), nullable=False),
        sa.Column('campus_id', sa.String(length=36), nullable=True),
        sa.Column('fee_id', sa.String(length=36), nullable=True),
        sa.Column('transaction_id', sa.String(length=36), nullable=True),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='open'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_reconciliation_issues_kind', 'reconciliation_issues', ['kind'])
    op.create_index('ix_reconciliation_issues_campus_id', 'reconciliation_issues', ['campus_id'])
    op.create_index('ix_reconciliation_issues_status', 'reconciliation_issues', ['status'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('campus_id', sa.String(length=36), nullable=True),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('user_role', sa.String(length=64), nullable=True),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('target', sa.String(length=160), nullable=True),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_audit_logs_campus_id', 'audit_logs', ['campus_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])


def downgrade():
    op.drop_table('audit_logs')
    op.drop_table('reconciliation_issues')
    op.drop_table('reminder_logs')
    op.drop_table('ledger_entries')
    op.drop_table('invoice_sequences')
    op.drop_table('payment_invoices')
    op.drop_table('payment_refunds')
    op.drop_table('payment_transactions')
    op.drop_table('fees')
    op.drop_table('fee_templates')
    op.drop_table('gateway_credentials')
    op.drop_table('students')
    op.drop_table('campuses')
