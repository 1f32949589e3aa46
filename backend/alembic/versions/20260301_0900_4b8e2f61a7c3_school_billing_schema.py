"""School billing schema: plans, accounts, users, payments, refund requests

Revision ID: 4b8e2f61a7c3
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '4b8e2f61a7c3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy stores Python enum members by name
SUBSCRIPTION_STATUS = ('TRIAL', 'TRIALING', 'PENDING', 'ACTIVE', 'PAID', 'PAST_DUE', 'CANCELLED', 'FAILED')
ACCOUNT_PAYMENT_STATUS = ('PENDING', 'PAID', 'FAILED')
BILLING_CYCLE = ('MONTHLY', 'YEARLY', 'ONE_TIME')
USER_ROLE = ('ADMIN', 'TEACHER', 'STUDENT')
PAYMENT_MODE = ('SUBSCRIPTION', 'ONE_TIME')
PAYMENT_STATUS = ('PENDING', 'TRIALING', 'SUCCEEDED', 'FAILED', 'PAST_DUE', 'CANCELLED')
REFUND_STATUS = ('PENDING', 'APPROVED', 'REJECTED', 'COMPLETED')


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('id', sa.UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    """Create billing tables."""
    # 1. Plans table (no dependencies)
    op.create_table(
        'plans',
        *_timestamps(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_monthly', sa.Integer(), nullable=True),
        sa.Column('price_yearly', sa.Integer(), nullable=True),
        sa.Column('teacher_addon_monthly', sa.Integer(), nullable=False, server_default='500'),
        sa.Column('teacher_addon_yearly', sa.Integer(), nullable=False, server_default='6000'),
        sa.Column('student_addon_monthly', sa.Integer(), nullable=False, server_default='300'),
        sa.Column('student_addon_yearly', sa.Integer(), nullable=False, server_default='3600'),
        sa.Column('max_teachers', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('max_students', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_classes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_schools', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('stripe_monthly_price_id', sa.String(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_plans_slug'), 'plans', ['slug'], unique=True)
    op.create_index(op.f('ix_plans_active'), 'plans', ['active'])

    # 2. Accounts table (depends on plans)
    op.create_table(
        'accounts',
        *_timestamps(),
        sa.Column('owner_email', sa.String(), nullable=False),
        sa.Column('owner_name', sa.String(), nullable=False, server_default=''),
        sa.Column('plan_id', sa.UUID(), nullable=True),
        sa.Column('subscription_status', sa.Enum(*SUBSCRIPTION_STATUS, name='subscriptionstatus'), nullable=False, server_default='TRIAL'),
        sa.Column('payment_status', sa.Enum(*ACCOUNT_PAYMENT_STATUS, name='accountpaymentstatus'), nullable=False, server_default='PENDING'),
        sa.Column('billing_cycle', sa.Enum(*BILLING_CYCLE, name='billingcycle'), nullable=True),
        sa.Column('subscription_start_date', sa.Date(), nullable=True),
        sa.Column('subscription_end_date', sa.Date(), nullable=True),
        sa.Column('has_used_trial', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(), nullable=True),
        sa.Column('credit_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('teacher_limit', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('student_limit', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('class_limit', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('school_limit', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_customer_id'),
    )
    op.create_index(op.f('ix_accounts_owner_email'), 'accounts', ['owner_email'])
    op.create_index(op.f('ix_accounts_plan_id'), 'accounts', ['plan_id'])
    op.create_index(op.f('ix_accounts_subscription_status'), 'accounts', ['subscription_status'])
    op.create_index(op.f('ix_accounts_stripe_subscription_id'), 'accounts', ['stripe_subscription_id'])

    # 3. Users table (depends on accounts)
    op.create_table(
        'users',
        *_timestamps(),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('first_name', sa.String(), nullable=False, server_default=''),
        sa.Column('last_name', sa.String(), nullable=False, server_default=''),
        sa.Column('role', sa.Enum(*USER_ROLE, name='userrole'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_users_account_id'), 'users', ['account_id'])
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)
    op.create_index(op.f('ix_users_role'), 'users', ['role'])

    # 4. Payments ledger (depends on accounts, plans, users)
    op.create_table(
        'payments',
        *_timestamps(),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('plan_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=True),
        sa.Column('mode', sa.Enum(*PAYMENT_MODE, name='paymentmode'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        sa.Column('status', sa.Enum(*PAYMENT_STATUS, name='paymentstatus'), nullable=False, server_default='PENDING'),
        sa.Column('stripe_payment_intent_id', sa.String(), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(), nullable=True),
        sa.Column('stripe_checkout_session_id', sa.String(), nullable=True),
        sa.Column('addons', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('extra_metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('idempotency_key', sa.String(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('email_sent_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_payment_intent_id'),
        sa.UniqueConstraint('stripe_checkout_session_id'),
    )
    op.create_index(op.f('ix_payments_account_id'), 'payments', ['account_id'])
    op.create_index(op.f('ix_payments_plan_id'), 'payments', ['plan_id'])
    op.create_index(op.f('ix_payments_status'), 'payments', ['status'])
    op.create_index(op.f('ix_payments_stripe_subscription_id'), 'payments', ['stripe_subscription_id'])
    op.create_index(op.f('ix_payments_idempotency_key'), 'payments', ['idempotency_key'])
    op.create_index(op.f('ix_payments_created_at'), 'payments', ['created_at'])
    # Guardrail lookups: latest row of an account by status
    op.create_index('ix_payments_account_status_created', 'payments', ['account_id', 'status', 'created_at'])

    # 5. Refund requests (depends on payments, accounts)
    op.create_table(
        'refund_requests',
        *_timestamps(),
        sa.Column('payment_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=True),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.Enum(*REFUND_STATUS, name='refundstatus'), nullable=False, server_default='PENDING'),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('stripe_refund_id', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id'),
    )
    op.create_index(op.f('ix_refund_requests_account_id'), 'refund_requests', ['account_id'])
    op.create_index(op.f('ix_refund_requests_status'), 'refund_requests', ['status'])


def downgrade() -> None:
    """Drop billing tables and enum types."""
    op.drop_table('refund_requests')
    op.drop_table('payments')
    op.drop_table('users')
    op.drop_table('accounts')
    op.drop_table('plans')

    for enum_name in (
        'refundstatus',
        'paymentstatus',
        'paymentmode',
        'userrole',
        'billingcycle',
        'accountpaymentstatus',
        'subscriptionstatus',
    ):
        op.execute(f'DROP TYPE IF EXISTS {enum_name}')
