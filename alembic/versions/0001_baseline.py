"""Baseline migration - tenancy, refill queue, commissions, ticketing, jobs

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19

Enum columns are VARCHAR(32) (non-native enums) so the same schema runs on
PostgreSQL and SQLite.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column('id', sa.Uuid(), primary_key=True)


def _fk(name: str, target: str, *, nullable: bool = False, ondelete: str = 'CASCADE') -> sa.Column:
    return sa.Column(name, sa.Uuid(), sa.ForeignKey(target, ondelete=ondelete), nullable=nullable)


def _clinic() -> sa.Column:
    return _fk('clinic_id', 'clinics.id')


def _user_ref(name: str) -> sa.Column:
    return _fk(name, 'users.id', nullable=True, ondelete='SET NULL')


def _ts(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _enum(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.String(32), nullable=nullable)


def _flag(name: str) -> sa.Column:
    return sa.Column(name, sa.Boolean(), nullable=False, server_default=sa.false())


def _count(name: str, default: int = 0) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default=str(default))


def upgrade() -> None:
    """Create all tables."""

    # ==========================================================================
    # Tenancy & identity
    # ==========================================================================
    op.create_table(
        'clinics',
        _id(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False, unique=True),
        sa.Column('timezone', sa.String(50), nullable=False, server_default='America/Los_Angeles'),
        _ts('created_at', nullable=False),
        _ts('updated_at', nullable=False),
    )
    op.create_table(
        'users',
        _id(),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255), nullable=False),
        _count('token_version', 1),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at', nullable=False),
    )
    op.create_table(
        'memberships',
        _id(),
        sa.Column(
            'user_id',
            sa.Uuid(),
            sa.ForeignKey('users.id', ondelete='CASCADE'),
            nullable=False,
            unique=True,
        ),
        _clinic(),
        sa.Column('role', sa.String(50), nullable=False),
        _ts('created_at', nullable=False),
    )
    op.create_index('ix_memberships_clinic_id', 'memberships', ['clinic_id'])
    op.create_table(
        'clinic_counters',
        _id(),
        _clinic(),
        sa.Column('counter_type', sa.String(50), nullable=False),
        sa.Column('current_value', sa.Integer(), nullable=False),
        _ts('updated_at', nullable=False),
        sa.UniqueConstraint('clinic_id', 'counter_type', name='uq_clinic_counter'),
    )

    # ==========================================================================
    # Patients, billing, refill queue
    # ==========================================================================
    op.create_table(
        'patients',
        _id(),
        _clinic(),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255)),
        sa.Column('stripe_customer_id', sa.String(255)),
        _ts('created_at', nullable=False),
    )
    op.create_index('idx_patients_clinic', 'patients', ['clinic_id'])

    op.create_table(
        'subscriptions',
        _id(),
        _clinic(),
        _fk('patient_id', 'patients.id'),
        _enum('status'),
        sa.Column('medication_name', sa.String(255)),
        _count('vial_count', 1),
        sa.Column('amount_cents', sa.Integer()),
        sa.Column('interval_days', sa.Integer()),
        sa.Column('bud_days', sa.Integer()),
        _ts('created_at', nullable=False),
    )
    op.create_index(
        'idx_subscriptions_clinic_patient', 'subscriptions', ['clinic_id', 'patient_id']
    )

    op.create_table(
        'payments',
        _id(),
        _clinic(),
        _fk('patient_id', 'patients.id'),
        _fk('subscription_id', 'subscriptions.id', nullable=True, ondelete='SET NULL'),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        _enum('status'),
        sa.Column('stripe_payment_intent_id', sa.String(255)),
        sa.Column('stripe_charge_id', sa.String(255)),
        sa.Column('stripe_customer_id', sa.String(255)),
        sa.Column('invoice_id', sa.String(255)),
        _ts('created_at', nullable=False),
    )
    op.create_index(
        'idx_payments_clinic_patient_created', 'payments', ['clinic_id', 'patient_id', 'created_at']
    )

    op.create_table(
        'refill_queue',
        _id(),
        _clinic(),
        _fk('patient_id', 'patients.id'),
        _fk('subscription_id', 'subscriptions.id', nullable=True, ondelete='SET NULL'),
        _enum('status'),
        sa.Column('medication_name', sa.String(255)),
        sa.Column('amount_cents', sa.Integer()),
        _ts('next_refill_date', nullable=False),
        _ts('last_refill_date'),
        sa.Column('refill_interval_days', sa.Integer(), nullable=False),
        _count('vial_count', 1),
        _count('shipment_number', 1),
        _count('total_shipments', 1),
        _fk('parent_refill_id', 'refill_queue.id', nullable=True, ondelete='SET NULL'),
        _count('bud_days', 90),
        sa.Column('supply_days', sa.Integer(), nullable=False),
        _flag('payment_verified'),
        _ts('payment_verified_at'),
        _user_ref('payment_verified_by'),
        _enum('payment_method', nullable=True),
        sa.Column('payment_reference', sa.String(255)),
        _fk('stripe_payment_id', 'payments.id', nullable=True, ondelete='SET NULL'),
        _flag('admin_approved'),
        _ts('admin_approved_at'),
        _user_ref('admin_approved_by'),
        sa.Column('admin_notes', sa.Text()),
        sa.Column('rejection_reason', sa.Text()),
        _ts('rejected_at'),
        _ts('provider_queued_at'),
        _ts('prescribed_at'),
        sa.Column('order_id', sa.String(255)),
        sa.Column('hold_reason', sa.Text()),
        _ts('held_at'),
        _ts('cancelled_at'),
        sa.Column('cancel_reason', sa.Text()),
        _ts('reminder_sent_at'),
        _ts('patient_notified_at'),
        _ts('created_at', nullable=False),
        _ts('updated_at', nullable=False),
        sa.UniqueConstraint('stripe_payment_id', name='uq_refill_queue_stripe_payment'),
    )
    op.create_index('idx_refill_queue_clinic_status', 'refill_queue', ['clinic_id', 'status'])
    op.create_index('idx_refill_queue_due', 'refill_queue', ['status', 'next_refill_date'])
    op.create_index('idx_refill_queue_parent', 'refill_queue', ['parent_refill_id'])
    op.create_index('idx_refill_queue_subscription', 'refill_queue', ['subscription_id'])

    op.create_table(
        'refill_status_history',
        _id(),
        _clinic(),
        _fk('refill_id', 'refill_queue.id'),
        _enum('from_status', nullable=True),
        _enum('to_status'),
        _user_ref('actor_user_id'),
        sa.Column('note', sa.Text()),
        _ts('created_at', nullable=False),
    )
    op.create_index(
        'idx_refill_history_refill', 'refill_status_history', ['refill_id', 'created_at']
    )

    # ==========================================================================
    # Commission ledger
    # ==========================================================================
    op.create_table(
        'commission_plans',
        _id(),
        _clinic(),
        sa.Column('name', sa.String(255), nullable=False),
        _enum('plan_type'),
        sa.Column('flat_amount_cents', sa.Integer()),
        sa.Column('percent_bps', sa.Integer()),
        _flag('tier_enabled'),
        _flag('recurring_enabled'),
        sa.Column('recurring_months', sa.Integer()),
        sa.Column('recurring_decay_pct', sa.Integer()),
        sa.Column('recurring_percent_bps', sa.Integer()),
        sa.Column('recurring_flat_amount_cents', sa.Integer()),
        _count('hold_days'),
        sa.Column('clawback_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        _flag('is_default'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at', nullable=False),
    )
    op.create_index('idx_commission_plans_clinic', 'commission_plans', ['clinic_id', 'is_active'])

    op.create_table(
        'commission_tiers',
        _id(),
        _fk('plan_id', 'commission_plans.id'),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        _count('min_conversions'),
        _count('min_revenue_cents'),
        sa.Column('percent_bps', sa.Integer()),
        sa.Column('flat_amount_cents', sa.Integer()),
        _count('bonus_cents'),
        sa.UniqueConstraint('plan_id', 'level', name='uq_commission_tier_level'),
    )

    op.create_table(
        'product_rate_rules',
        _id(),
        _fk('plan_id', 'commission_plans.id'),
        sa.Column('name', sa.String(255), nullable=False),
        _count('priority'),
        sa.Column('product_sku', sa.String(100)),
        sa.Column('product_category', sa.String(100)),
        sa.Column('min_price_cents', sa.Integer()),
        sa.Column('max_price_cents', sa.Integer()),
        _enum('rate_type'),
        sa.Column('flat_amount_cents', sa.Integer()),
        sa.Column('percent_bps', sa.Integer()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        'commission_promotions',
        _id(),
        _clinic(),
        _fk('plan_id', 'commission_plans.id', nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        _ts('starts_at', nullable=False),
        _ts('ends_at'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _count('bonus_percent_bps'),
        _count('bonus_flat_cents'),
        sa.Column('max_uses', sa.Integer()),
        _count('uses_count'),
        sa.Column('min_order_cents', sa.Integer()),
        sa.Column('affiliate_ids', sa.JSON(), nullable=False),
        sa.Column('ref_codes', sa.JSON(), nullable=False),
    )
    op.create_index(
        'idx_commission_promotions_window',
        'commission_promotions',
        ['clinic_id', 'starts_at', 'ends_at'],
    )

    op.create_table(
        'affiliates',
        _id(),
        _clinic(),
        _enum('kind'),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255)),
        _enum('status'),
        _fk('commission_plan_id', 'commission_plans.id', nullable=True, ondelete='SET NULL'),
        _count('lifetime_conversions'),
        _count('lifetime_revenue_cents'),
        _flag('tax_doc_verified'),
        _enum('payout_method', nullable=True),
        _flag('payout_method_verified'),
        _ts('created_at', nullable=False),
    )
    op.create_index('idx_affiliates_clinic', 'affiliates', ['clinic_id', 'status'])

    op.create_table(
        'affiliate_ref_codes',
        _id(),
        _clinic(),
        _fk('affiliate_id', 'affiliates.id'),
        sa.Column('code', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('clinic_id', 'code', name='uq_affiliate_ref_code'),
    )

    op.create_table(
        'affiliate_touches',
        _id(),
        _clinic(),
        _fk('affiliate_id', 'affiliates.id'),
        sa.Column('ref_code', sa.String(100)),
        _fk('patient_id', 'patients.id', nullable=True, ondelete='SET NULL'),
        sa.Column('ip_address_hash', sa.String(64)),
        _ts('touched_at', nullable=False),
        _ts('converted_at'),
    )
    op.create_index(
        'idx_affiliate_touches_patient', 'affiliate_touches', ['clinic_id', 'patient_id', 'touched_at']
    )
    op.create_index(
        'idx_affiliate_touches_ip', 'affiliate_touches', ['clinic_id', 'affiliate_id', 'ip_address_hash']
    )

    op.create_table(
        'payouts',
        _id(),
        _clinic(),
        _fk('affiliate_id', 'affiliates.id'),
        _enum('status'),
        _enum('method'),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        _count('fee_cents'),
        sa.Column('net_amount_cents', sa.Integer(), nullable=False),
        _count('event_count'),
        _ts('period_start'),
        _ts('period_end'),
        _ts('processed_at'),
        sa.Column('failure_reason', sa.Text()),
        _user_ref('created_by'),
        _ts('created_at', nullable=False),
    )
    op.create_index('idx_payouts_affiliate', 'payouts', ['clinic_id', 'affiliate_id', 'created_at'])

    op.create_table(
        'commission_events',
        _id(),
        _clinic(),
        _fk('affiliate_id', 'affiliates.id'),
        _fk('plan_id', 'commission_plans.id', nullable=True, ondelete='SET NULL'),
        _fk('patient_id', 'patients.id', nullable=True, ondelete='SET NULL'),
        _fk('touch_id', 'affiliate_touches.id', nullable=True, ondelete='SET NULL'),
        sa.Column('order_id', sa.String(255)),
        sa.Column('invoice_id', sa.String(255)),
        sa.Column('stripe_event_id', sa.String(255)),
        sa.Column('event_amount_cents', sa.Integer(), nullable=False),
        sa.Column('commission_amount_cents', sa.Integer(), nullable=False),
        sa.Column('breakdown', sa.JSON(), nullable=False),
        _enum('status'),
        sa.Column('hold_reason', sa.String(100)),
        _flag('is_recurring'),
        sa.Column('recurring_month', sa.Integer()),
        _fk('original_event_id', 'commission_events.id', nullable=True, ondelete='SET NULL'),
        _ts('occurred_at', nullable=False),
        _ts('hold_until', nullable=False),
        _ts('approved_at'),
        _ts('paid_at'),
        _ts('reversed_at'),
        sa.Column('reversal_reason', sa.Text()),
        _ts('voided_at'),
        _fk('payout_id', 'payouts.id', nullable=True, ondelete='SET NULL'),
        _ts('created_at', nullable=False),
        sa.UniqueConstraint('clinic_id', 'order_id', name='uq_commission_event_order'),
        sa.UniqueConstraint('clinic_id', 'invoice_id', name='uq_commission_event_invoice'),
        sa.UniqueConstraint('clinic_id', 'stripe_event_id', name='uq_commission_event_stripe'),
    )
    op.create_index(
        'idx_commission_events_affiliate',
        'commission_events',
        ['clinic_id', 'affiliate_id', 'occurred_at'],
    )
    op.create_index(
        'idx_commission_events_status', 'commission_events', ['clinic_id', 'status', 'hold_until']
    )
    op.create_index('idx_commission_events_original', 'commission_events', ['original_event_id'])

    op.create_table(
        'fraud_configs',
        _id(),
        sa.Column(
            'clinic_id',
            sa.Uuid(),
            sa.ForeignKey('clinics.id', ondelete='CASCADE'),
            nullable=False,
            unique=True,
        ),
        _count('max_conversions_per_day', 50),
        _count('max_conversions_per_hour', 10),
        _count('velocity_spike_multiplier', 3),
        _count('max_conversions_per_ip', 3),
        _count('max_refund_rate_pct', 20),
        _count('min_refunds_for_alert', 5),
        _count('high_risk_score_threshold', 25),
        sa.Column('auto_hold_on_high_risk', sa.Boolean(), nullable=False, server_default=sa.true()),
        _flag('auto_suspend_on_critical'),
    )

    op.create_table(
        'fraud_alerts',
        _id(),
        _clinic(),
        _fk('affiliate_id', 'affiliates.id'),
        _fk('commission_event_id', 'commission_events.id', nullable=True, ondelete='SET NULL'),
        _enum('alert_type'),
        _enum('severity'),
        _count('risk_score'),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('evidence', sa.JSON(), nullable=False),
        sa.Column('affected_amount_cents', sa.Integer()),
        _enum('status'),
        _ts('resolved_at'),
        _user_ref('resolved_by'),
        sa.Column('resolution_notes', sa.Text()),
        _ts('created_at', nullable=False),
    )
    op.create_index('idx_fraud_alerts_clinic_status', 'fraud_alerts', ['clinic_id', 'status'])
    op.create_index('idx_fraud_alerts_event', 'fraud_alerts', ['commission_event_id'])

    # ==========================================================================
    # Ticketing & SLA
    # ==========================================================================
    op.create_table(
        'ticket_business_hours',
        _id(),
        _clinic(),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('timezone', sa.String(50), nullable=False),
        sa.Column('schedule', sa.JSON(), nullable=False),
        sa.Column('holidays', sa.JSON(), nullable=False),
        _flag('is_default'),
        _ts('created_at', nullable=False),
        _ts('updated_at', nullable=False),
    )
    op.create_index('ix_ticket_business_hours_clinic_id', 'ticket_business_hours', ['clinic_id'])

    op.create_table(
        'sla_policy_configs',
        _id(),
        _clinic(),
        sa.Column('name', sa.String(100), nullable=False),
        _enum('priority', nullable=True),
        _enum('category', nullable=True),
        _flag('is_default'),
        sa.Column('first_response_minutes', sa.Integer()),
        sa.Column('resolution_minutes', sa.Integer(), nullable=False),
        _flag('respect_business_hours'),
        _fk('business_hours_id', 'ticket_business_hours.id', nullable=True, ondelete='SET NULL'),
        _count('warning_threshold_pct', 80),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at', nullable=False),
    )
    op.create_index('idx_sla_policies_clinic', 'sla_policy_configs', ['clinic_id', 'is_active'])

    op.create_table(
        'tickets',
        _id(),
        _clinic(),
        sa.Column('ticket_number', sa.String(20), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        _enum('status'),
        _enum('priority'),
        _enum('category'),
        sa.Column('team_id', sa.Uuid()),
        _user_ref('assignee_user_id'),
        _user_ref('reporter_user_id'),
        _fk('patient_id', 'patients.id', nullable=True, ondelete='SET NULL'),
        _fk('parent_ticket_id', 'tickets.id', nullable=True, ondelete='SET NULL'),
        _fk('merged_into_id', 'tickets.id', nullable=True, ondelete='SET NULL'),
        _count('reopen_count'),
        sa.Column('resolution_notes', sa.Text()),
        _ts('first_response_at'),
        _ts('resolved_at'),
        _ts('closed_at'),
        _ts('last_activity_at', nullable=False),
        _ts('created_at', nullable=False),
        _ts('updated_at', nullable=False),
        sa.UniqueConstraint('clinic_id', 'ticket_number', name='uq_ticket_number'),
    )
    op.create_index('idx_tickets_clinic_status', 'tickets', ['clinic_id', 'status'])
    op.create_index('idx_tickets_clinic_activity', 'tickets', ['clinic_id', 'last_activity_at'])
    op.create_index('idx_tickets_parent', 'tickets', ['parent_ticket_id'])

    op.create_table(
        'ticket_slas',
        _id(),
        _clinic(),
        sa.Column(
            'ticket_id',
            sa.Uuid(),
            sa.ForeignKey('tickets.id', ondelete='CASCADE'),
            nullable=False,
            unique=True,
        ),
        _fk('policy_id', 'sla_policy_configs.id', nullable=True, ondelete='SET NULL'),
        _ts('started_at', nullable=False),
        _ts('first_response_due'),
        _ts('resolution_due', nullable=False),
        _flag('first_response_breached'),
        _flag('resolution_breached'),
        _ts('breached_at'),
        _ts('paused_at'),
        _count('total_paused_seconds'),
        _ts('warning_notified_at'),
    )

    op.create_table(
        'ticket_activities',
        _id(),
        _clinic(),
        _fk('ticket_id', 'tickets.id'),
        _user_ref('actor_user_id'),
        _enum('activity_type'),
        sa.Column('details', sa.JSON(), nullable=False),
        _ts('created_at', nullable=False),
    )
    op.create_index(
        'idx_ticket_activities_ticket', 'ticket_activities', ['ticket_id', 'created_at']
    )

    op.create_table(
        'ticket_status_history',
        _id(),
        _clinic(),
        _fk('ticket_id', 'tickets.id'),
        _enum('from_status', nullable=True),
        _enum('to_status'),
        _user_ref('changed_by'),
        sa.Column('reason', sa.Text()),
        _ts('created_at', nullable=False),
    )
    op.create_index(
        'idx_ticket_status_history_ticket', 'ticket_status_history', ['ticket_id', 'created_at']
    )

    op.create_table(
        'ticket_comments',
        _id(),
        _clinic(),
        _fk('ticket_id', 'tickets.id'),
        _user_ref('author_user_id'),
        sa.Column('body', sa.Text(), nullable=False),
        _flag('is_internal'),
        _ts('created_at', nullable=False),
    )
    op.create_index('idx_ticket_comments_ticket', 'ticket_comments', ['ticket_id', 'created_at'])

    op.create_table(
        'ticket_watchers',
        _id(),
        _clinic(),
        _fk('ticket_id', 'tickets.id'),
        _fk('user_id', 'users.id'),
        _ts('created_at', nullable=False),
        sa.UniqueConstraint('ticket_id', 'user_id', name='uq_ticket_watcher'),
    )

    # ==========================================================================
    # Background jobs & scheduled email
    # ==========================================================================
    op.create_table(
        'jobs',
        _id(),
        _fk('clinic_id', 'clinics.id', nullable=True),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        _ts('run_at', nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        _count('attempts'),
        _count('max_attempts', 3),
        sa.Column('last_error', sa.Text()),
        _ts('created_at', nullable=False),
        _ts('completed_at'),
        sa.Column('idempotency_key', sa.String(255)),
    )
    op.create_index('idx_jobs_pending', 'jobs', ['status', 'run_at'])
    op.create_index('idx_jobs_clinic', 'jobs', ['clinic_id', 'created_at'])
    op.create_index('uq_job_idempotency', 'jobs', ['idempotency_key'], unique=True)

    op.create_table(
        'scheduled_emails',
        _id(),
        _clinic(),
        sa.Column('recipient_email', sa.String(255), nullable=False),
        sa.Column('subject', sa.String(500), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('template', sa.String(100)),
        _enum('status'),
        _ts('scheduled_for', nullable=False),
        _ts('sent_at'),
        _count('retry_count'),
        _count('max_retries', 3),
        sa.Column('last_error', sa.Text()),
        sa.Column('external_message_id', sa.String(255)),
        _fk('refill_id', 'refill_queue.id', nullable=True, ondelete='SET NULL'),
        _fk('ticket_id', 'tickets.id', nullable=True, ondelete='SET NULL'),
        _ts('created_at', nullable=False),
    )
    op.create_index('idx_scheduled_emails_due', 'scheduled_emails', ['status', 'scheduled_for'])


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    for table in (
        'scheduled_emails',
        'jobs',
        'ticket_watchers',
        'ticket_comments',
        'ticket_status_history',
        'ticket_activities',
        'ticket_slas',
        'tickets',
        'sla_policy_configs',
        'ticket_business_hours',
        'fraud_alerts',
        'fraud_configs',
        'commission_events',
        'payouts',
        'affiliate_touches',
        'affiliate_ref_codes',
        'affiliates',
        'commission_promotions',
        'product_rate_rules',
        'commission_tiers',
        'commission_plans',
        'refill_status_history',
        'refill_queue',
        'payments',
        'subscriptions',
        'patients',
        'clinic_counters',
        'memberships',
        'users',
        'clinics',
    ):
        op.drop_table(table)
