"""Commission ledger - calculation, attribution, recurring schedule and lifecycle.

total = base + tier bonus + promotion bonus + product adjustment, where
the base uses the tier rate when a tier overrides the plan rate and the
product adjustment is the difference a matching product rule makes.
Breakdowns are stored on the event at conversion time.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinicops.core.constants import DAYS_PER_MONTH
from clinicops.core.security import hash_ip
from clinicops.db.enums import (
    AffiliateStatus,
    AttributionModel,
    CommissionEventStatus,
    CommissionPlanType,
)
from clinicops.db.models import (
    Affiliate,
    AffiliateRefCode,
    AffiliateTouch,
    CommissionEvent,
    CommissionPlan,
    CommissionPromotion,
    CommissionTier,
    ProductRateRule,
)
from clinicops.services import fraud_service, payout_service

logger = logging.getLogger(__name__)

# Statuses a refund can claw back
REVERSIBLE_STATUSES = frozenset(
    {
        CommissionEventStatus.PENDING,
        CommissionEventStatus.APPROVED,
        CommissionEventStatus.ON_HOLD,
    }
)

SKIP_DUPLICATE = "duplicate"
SKIP_NO_AFFILIATE = "no_affiliate"
SKIP_AFFILIATE_INACTIVE = "affiliate_inactive"
SKIP_NO_PLAN = "no_plan"


@dataclass
class CommissionBreakdown:
    base_commission_cents: int = 0
    tier_bonus_cents: int = 0
    promotion_bonus_cents: int = 0
    product_adjustment_cents: int = 0
    tier_name: str | None = None
    product_rule: str | None = None
    recurring_base_cents: int | None = None
    promotion_ids: list[str] = field(default_factory=list)

    @property
    def total_cents(self) -> int:
        return (
            self.base_commission_cents
            + self.tier_bonus_cents
            + self.promotion_bonus_cents
            + self.product_adjustment_cents
        )

    def as_dict(self) -> dict:
        data = asdict(self)
        data["total_cents"] = self.total_cents
        return data


@dataclass
class CommissionResult:
    event: CommissionEvent | None = None
    skipped: bool = False
    skip_reason: str | None = None
    recurring_events: list[CommissionEvent] = field(default_factory=list)
    fraud: fraud_service.FraudCheckResult | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _first_set(*values: int | None) -> int | None:
    return next((v for v in values if v is not None), None)


# =============================================================================
# Calculator
# =============================================================================


def calculate_commission(
    amount_cents: int,
    plan_type: CommissionPlanType,
    flat_amount_cents: int | None,
    percent_bps: int | None,
) -> int:
    """Flat plans pay the flat amount; percent plans pay percent_bps of the amount."""
    if plan_type == CommissionPlanType.FLAT:
        return flat_amount_cents or 0
    if plan_type == CommissionPlanType.PERCENT and percent_bps:
        return round(amount_cents * percent_bps / 10000)
    return 0


def select_tier(plan: CommissionPlan, affiliate: Affiliate) -> CommissionTier | None:
    """Highest tier the affiliate's lifetime stats qualify for."""
    if not plan.tier_enabled:
        return None
    for tier in sorted(plan.tiers, key=lambda t: t.level, reverse=True):
        if (
            affiliate.lifetime_conversions >= tier.min_conversions
            and affiliate.lifetime_revenue_cents >= tier.min_revenue_cents
        ):
            return tier
    return None


def _rule_label(rule: ProductRateRule, amount_cents: int, sku: str | None, category: str | None):
    if rule.product_sku and sku and rule.product_sku == sku:
        return f"SKU: {rule.product_sku}"
    if (
        rule.product_category
        and category
        and rule.product_category.lower() == category.lower()
    ):
        return f"Category: {rule.product_category}"
    if rule.min_price_cents is not None and rule.max_price_cents is not None:
        if rule.min_price_cents <= amount_cents <= rule.max_price_cents:
            return f"Price range: {rule.min_price_cents}-{rule.max_price_cents}"
    return None


def match_product_rule(
    plan: CommissionPlan,
    *,
    amount_cents: int,
    product_sku: str | None = None,
    product_category: str | None = None,
) -> tuple[ProductRateRule, str] | None:
    """First active rule (by priority) matching SKU, then category, then price range."""
    rules = sorted(
        (rule for rule in plan.product_rules if rule.is_active),
        key=lambda r: r.priority,
        reverse=True,
    )
    for rule in rules:
        label = _rule_label(rule, amount_cents, product_sku, product_category)
        if label:
            return rule, label
    return None


def active_promotions(
    db: Session,
    *,
    clinic_id: UUID,
    plan_id: UUID,
    affiliate_id: UUID,
    ref_code: str | None,
    amount_cents: int,
    now: datetime,
) -> list[CommissionPromotion]:
    candidates = (
        db.query(CommissionPromotion)
        .filter(
            CommissionPromotion.clinic_id == clinic_id,
            CommissionPromotion.is_active.is_(True),
            CommissionPromotion.starts_at <= now,
            or_(CommissionPromotion.ends_at.is_(None), CommissionPromotion.ends_at >= now),
            or_(CommissionPromotion.plan_id.is_(None), CommissionPromotion.plan_id == plan_id),
        )
        .order_by(CommissionPromotion.starts_at)
        .all()
    )

    applicable = []
    for promo in candidates:
        if promo.max_uses is not None and promo.uses_count >= promo.max_uses:
            continue
        if promo.min_order_cents is not None and amount_cents < promo.min_order_cents:
            continue
        if promo.affiliate_ids and str(affiliate_id) not in {str(a) for a in promo.affiliate_ids}:
            continue
        if promo.ref_codes and ref_code not in promo.ref_codes:
            continue
        applicable.append(promo)
    return applicable


def compute_breakdown(
    db: Session,
    *,
    plan: CommissionPlan,
    affiliate: Affiliate,
    amount_cents: int,
    product_sku: str | None = None,
    product_category: str | None = None,
    ref_code: str | None = None,
    now: datetime | None = None,
) -> tuple[CommissionBreakdown, list[CommissionPromotion]]:
    now = now or _now_utc()
    breakdown = CommissionBreakdown()

    percent_bps = plan.percent_bps
    flat_cents = plan.flat_amount_cents
    # Renewal months use the recurring rates when the plan sets them.
    recurring_percent_bps = _first_set(plan.recurring_percent_bps, percent_bps)
    recurring_flat_cents = _first_set(plan.recurring_flat_amount_cents, flat_cents)

    tier = select_tier(plan, affiliate)
    if tier is not None:
        breakdown.tier_name = tier.name
        if tier.percent_bps is not None:
            percent_bps = recurring_percent_bps = tier.percent_bps
        if tier.flat_amount_cents is not None:
            flat_cents = recurring_flat_cents = tier.flat_amount_cents
        breakdown.tier_bonus_cents = tier.bonus_cents or 0

    breakdown.base_commission_cents = calculate_commission(
        amount_cents, plan.plan_type, flat_cents, percent_bps
    )
    if plan.recurring_enabled:
        breakdown.recurring_base_cents = calculate_commission(
            amount_cents, plan.plan_type, recurring_flat_cents, recurring_percent_bps
        )

    matched = match_product_rule(
        plan,
        amount_cents=amount_cents,
        product_sku=product_sku,
        product_category=product_category,
    )
    if matched is not None:
        rule, label = matched
        product_commission = calculate_commission(
            amount_cents, rule.rate_type, rule.flat_amount_cents, rule.percent_bps
        )
        breakdown.product_rule = label
        breakdown.product_adjustment_cents = product_commission - breakdown.base_commission_cents
        if plan.recurring_enabled:
            breakdown.recurring_base_cents = product_commission

    promotions = active_promotions(
        db,
        clinic_id=affiliate.clinic_id,
        plan_id=plan.id,
        affiliate_id=affiliate.id,
        ref_code=ref_code,
        amount_cents=amount_cents,
        now=now,
    )
    for promo in promotions:
        breakdown.promotion_bonus_cents += round(amount_cents * promo.bonus_percent_bps / 10000)
        breakdown.promotion_bonus_cents += promo.bonus_flat_cents
        breakdown.promotion_ids.append(str(promo.id))

    return breakdown, promotions


def recurring_amount(base_cents: int, decay_pct: int | None, month: int) -> int:
    """Month m pays base * (1 - decay/100)^(m-1), compounding."""
    factor = 1 - (decay_pct or 0) / 100
    return round(base_cents * factor ** (month - 1))


# =============================================================================
# Attribution
# =============================================================================


def record_touch(
    db: Session,
    *,
    clinic_id: UUID,
    ref_code: str,
    patient_id: UUID | None = None,
    ip_address: str | None = None,
    touched_at: datetime | None = None,
) -> AffiliateTouch:
    code = (
        db.query(AffiliateRefCode)
        .filter(
            AffiliateRefCode.clinic_id == clinic_id,
            AffiliateRefCode.code == ref_code,
            AffiliateRefCode.is_active.is_(True),
        )
        .first()
    )
    if not code:
        raise HTTPException(status_code=404, detail="Referral code not found")

    touch = AffiliateTouch(
        clinic_id=clinic_id,
        affiliate_id=code.affiliate_id,
        ref_code=code.code,
        patient_id=patient_id,
        ip_address_hash=hash_ip(ip_address) if ip_address else None,
        touched_at=touched_at or _now_utc(),
    )
    db.add(touch)
    db.commit()
    db.refresh(touch)
    return touch


def attribute_conversion(
    db: Session,
    *,
    clinic_id: UUID,
    patient_id: UUID,
    model: AttributionModel = AttributionModel.LAST_CLICK,
) -> AffiliateTouch | None:
    """
    Pick the touch credited with a patient's conversion.

    LINEAR credits the affiliate holding the largest share of touches and
    returns its latest touch; ties go to the affiliate touched most recently.
    """
    touches = (
        db.query(AffiliateTouch)
        .filter(AffiliateTouch.clinic_id == clinic_id, AffiliateTouch.patient_id == patient_id)
        .order_by(AffiliateTouch.touched_at.asc())
        .all()
    )
    if not touches:
        return None
    if model == AttributionModel.FIRST_CLICK:
        return touches[0]
    if model != AttributionModel.LINEAR:
        return touches[-1]

    credit: dict[UUID, float] = {}
    latest: dict[UUID, AffiliateTouch] = {}
    for touch, weight in touch_weights(touches, model):
        credit[touch.affiliate_id] = credit.get(touch.affiliate_id, 0.0) + weight
        latest[touch.affiliate_id] = touch
    winner = max(credit, key=lambda a: (credit[a], latest[a].touched_at))
    return latest[winner]


def touch_weights(
    touches: list[AffiliateTouch], model: AttributionModel
) -> list[tuple[AffiliateTouch, float]]:
    """Share of conversion credit per touch; touches are oldest first."""
    if not touches:
        return []
    if model == AttributionModel.LINEAR:
        share = 1 / len(touches)
        return [(touch, share) for touch in touches]
    winner = touches[0] if model == AttributionModel.FIRST_CLICK else touches[-1]
    return [(touch, 1.0 if touch is winner else 0.0) for touch in touches]


def resolve_plan(db: Session, affiliate: Affiliate) -> CommissionPlan | None:
    """The affiliate's own active plan, else the clinic's active default."""
    plan = affiliate.commission_plan
    if plan is not None and plan.is_active:
        return plan
    return (
        db.query(CommissionPlan)
        .filter(
            CommissionPlan.clinic_id == affiliate.clinic_id,
            CommissionPlan.is_default.is_(True),
            CommissionPlan.is_active.is_(True),
        )
        .first()
    )


# =============================================================================
# Conversions
# =============================================================================


def _find_existing_event(
    db: Session,
    *,
    clinic_id: UUID,
    order_id: str | None,
    invoice_id: str | None,
    stripe_event_id: str | None,
) -> CommissionEvent | None:
    keys = []
    if order_id:
        keys.append(CommissionEvent.order_id == order_id)
    if invoice_id:
        keys.append(CommissionEvent.invoice_id == invoice_id)
    if stripe_event_id:
        keys.append(CommissionEvent.stripe_event_id == stripe_event_id)
    if not keys:
        return None
    return (
        db.query(CommissionEvent)
        .filter(CommissionEvent.clinic_id == clinic_id, or_(*keys))
        .first()
    )


def _resolve_affiliate(
    db: Session,
    *,
    clinic_id: UUID,
    affiliate_id: UUID | None,
    ref_code: str | None,
    patient_id: UUID | None,
    model: AttributionModel,
) -> tuple[Affiliate | None, AffiliateTouch | None, str | None]:
    touch = None
    if affiliate_id is None and ref_code:
        code = (
            db.query(AffiliateRefCode)
            .filter(AffiliateRefCode.clinic_id == clinic_id, AffiliateRefCode.code == ref_code)
            .first()
        )
        affiliate_id = code.affiliate_id if code else None
    if affiliate_id is None and patient_id is not None:
        touch = attribute_conversion(db, clinic_id=clinic_id, patient_id=patient_id, model=model)
        if touch is not None:
            affiliate_id = touch.affiliate_id
            ref_code = ref_code or touch.ref_code
    if affiliate_id is None:
        return None, None, ref_code
    affiliate = (
        db.query(Affiliate)
        .filter(Affiliate.clinic_id == clinic_id, Affiliate.id == affiliate_id)
        .first()
    )
    return affiliate, touch, ref_code


def record_conversion(
    db: Session,
    *,
    clinic_id: UUID,
    amount_cents: int,
    patient_id: UUID | None = None,
    affiliate_id: UUID | None = None,
    ref_code: str | None = None,
    order_id: str | None = None,
    invoice_id: str | None = None,
    stripe_event_id: str | None = None,
    occurred_at: datetime | None = None,
    product_sku: str | None = None,
    product_category: str | None = None,
    ip_address: str | None = None,
    attribution_model: AttributionModel = AttributionModel.LAST_CLICK,
) -> CommissionResult:
    """
    Credit a conversion to an affiliate.

    Idempotent per order / invoice / stripe event: a repeat returns the
    existing event with skipped=True. Recurring plans also record the
    decayed month 2..N events up front.
    """
    if amount_cents <= 0:
        raise HTTPException(status_code=422, detail="amount_cents must be positive")
    if not (order_id or invoice_id or stripe_event_id):
        raise HTTPException(
            status_code=422, detail="One of order_id, invoice_id or stripe_event_id is required"
        )

    existing = _find_existing_event(
        db,
        clinic_id=clinic_id,
        order_id=order_id,
        invoice_id=invoice_id,
        stripe_event_id=stripe_event_id,
    )
    if existing is not None:
        return CommissionResult(event=existing, skipped=True, skip_reason=SKIP_DUPLICATE)

    affiliate, touch, ref_code = _resolve_affiliate(
        db,
        clinic_id=clinic_id,
        affiliate_id=affiliate_id,
        ref_code=ref_code,
        patient_id=patient_id,
        model=attribution_model,
    )
    if affiliate is None:
        return CommissionResult(skipped=True, skip_reason=SKIP_NO_AFFILIATE)
    if affiliate.status != AffiliateStatus.ACTIVE:
        return CommissionResult(skipped=True, skip_reason=SKIP_AFFILIATE_INACTIVE)
    plan = resolve_plan(db, affiliate)
    if plan is None:
        return CommissionResult(skipped=True, skip_reason=SKIP_NO_PLAN)

    now = _now_utc()
    occurred_at = occurred_at or now
    breakdown, promotions = compute_breakdown(
        db,
        plan=plan,
        affiliate=affiliate,
        amount_cents=amount_cents,
        product_sku=product_sku,
        product_category=product_category,
        ref_code=ref_code,
        now=occurred_at,
    )

    event = CommissionEvent(
        clinic_id=clinic_id,
        affiliate_id=affiliate.id,
        plan_id=plan.id,
        patient_id=patient_id,
        touch_id=touch.id if touch else None,
        order_id=order_id,
        invoice_id=invoice_id,
        stripe_event_id=stripe_event_id,
        event_amount_cents=amount_cents,
        commission_amount_cents=breakdown.total_cents,
        breakdown=breakdown.as_dict(),
        status=CommissionEventStatus.PENDING,
        recurring_month=1 if plan.recurring_enabled else None,
        occurred_at=occurred_at,
        hold_until=occurred_at + timedelta(days=plan.hold_days),
    )
    db.add(event)

    for promo in promotions:
        promo.uses_count += 1
    affiliate.lifetime_conversions += 1
    affiliate.lifetime_revenue_cents += amount_cents

    ip_hash = hash_ip(ip_address) if ip_address else None
    if touch is not None:
        touch.converted_at = now
        ip_hash = ip_hash or touch.ip_address_hash
        touch.patient_id = touch.patient_id or patient_id

    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = _find_existing_event(
            db,
            clinic_id=clinic_id,
            order_id=order_id,
            invoice_id=invoice_id,
            stripe_event_id=stripe_event_id,
        )
        return CommissionResult(event=existing, skipped=True, skip_reason=SKIP_DUPLICATE)

    recurring = _schedule_recurring_events(db, event=event, plan=plan, breakdown=breakdown)
    fraud = fraud_service.evaluate_conversion(
        db, event, affiliate=affiliate, ip_hash=ip_hash, now=now
    )

    db.commit()
    db.refresh(event)
    logger.info(
        "Commission event %s recorded affiliate=%s amount=%s recurring=%s",
        event.id,
        affiliate.id,
        event.commission_amount_cents,
        len(recurring),
    )
    return CommissionResult(event=event, recurring_events=recurring, fraud=fraud)


def _schedule_recurring_events(
    db: Session,
    *,
    event: CommissionEvent,
    plan: CommissionPlan,
    breakdown: CommissionBreakdown,
) -> list[CommissionEvent]:
    """Months 2..N carry the decayed recurring base; bonuses are month 1 only."""
    if not plan.recurring_enabled or not plan.recurring_months or plan.recurring_months < 2:
        return []
    recurring_base = breakdown.recurring_base_cents or 0
    children = []
    for month in range(2, plan.recurring_months + 1):
        occurred_at = event.occurred_at + timedelta(days=DAYS_PER_MONTH * (month - 1))
        amount = recurring_amount(recurring_base, plan.recurring_decay_pct, month)
        child = CommissionEvent(
            clinic_id=event.clinic_id,
            affiliate_id=event.affiliate_id,
            plan_id=plan.id,
            patient_id=event.patient_id,
            touch_id=event.touch_id,
            event_amount_cents=event.event_amount_cents,
            commission_amount_cents=amount,
            breakdown={
                "recurring_base_cents": recurring_base,
                "recurring_decay_pct": plan.recurring_decay_pct or 0,
                "recurring_month": month,
                "total_cents": amount,
            },
            status=CommissionEventStatus.PENDING,
            is_recurring=True,
            recurring_month=month,
            original_event_id=event.id,
            occurred_at=occurred_at,
            hold_until=occurred_at + timedelta(days=plan.hold_days),
        )
        db.add(child)
        children.append(child)
    db.flush()
    return children


# =============================================================================
# Lifecycle
# =============================================================================


def get_event(db: Session, *, clinic_id: UUID, event_id: UUID) -> CommissionEvent:
    event = (
        db.query(CommissionEvent)
        .filter(CommissionEvent.clinic_id == clinic_id, CommissionEvent.id == event_id)
        .first()
    )
    if not event:
        raise HTTPException(status_code=404, detail="Commission event not found")
    return event


def list_events(
    db: Session,
    *,
    clinic_id: UUID,
    affiliate_id: UUID | None = None,
    status: CommissionEventStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CommissionEvent], int]:
    query = db.query(CommissionEvent).filter(CommissionEvent.clinic_id == clinic_id)
    if affiliate_id:
        query = query.filter(CommissionEvent.affiliate_id == affiliate_id)
    if status:
        query = query.filter(CommissionEvent.status == status)
    total = query.count()
    items = (
        query.order_by(CommissionEvent.occurred_at.desc(), CommissionEvent.recurring_month.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return items, total


def approve_pending_commissions(
    db: Session, *, now: datetime | None = None, clinic_id: UUID | None = None
) -> int:
    """PENDING events past hold_until with no holding fraud alert become APPROVED."""
    now = now or _now_utc()
    query = db.query(CommissionEvent).filter(
        CommissionEvent.status == CommissionEventStatus.PENDING,
        CommissionEvent.hold_until <= now,
    )
    if clinic_id:
        query = query.filter(CommissionEvent.clinic_id == clinic_id)

    approved = 0
    for event in query.all():
        if fraud_service.is_event_held(db, event):
            continue
        event.status = CommissionEventStatus.APPROVED
        event.approved_at = now
        approved += 1
    db.commit()

    if approved:
        logger.info("Approved %s pending commission events", approved)
    return approved


def reverse_commission_for_refund(
    db: Session,
    *,
    clinic_id: UUID,
    order_id: str | None = None,
    invoice_id: str | None = None,
    reason: str | None = None,
) -> CommissionResult:
    """
    Claw back a refunded conversion when the plan allows it.

    The month 1 event is REVERSED; its unpaid recurring children are VOIDED.
    """
    if not (order_id or invoice_id):
        raise HTTPException(status_code=422, detail="order_id or invoice_id is required")

    event = _find_existing_event(
        db, clinic_id=clinic_id, order_id=order_id, invoice_id=invoice_id, stripe_event_id=None
    )
    if event is None:
        return CommissionResult(skipped=True, skip_reason="not_found")
    plan = db.get(CommissionPlan, event.plan_id) if event.plan_id else None
    if plan is None or not plan.clawback_enabled:
        return CommissionResult(event=event, skipped=True, skip_reason="clawback_disabled")
    if event.status == CommissionEventStatus.REVERSED:
        return CommissionResult(event=event, skipped=True, skip_reason="already_reversed")
    if event.status not in REVERSIBLE_STATUSES:
        return CommissionResult(event=event, skipped=True, skip_reason="not_reversible")

    now = _now_utc()
    event.status = CommissionEventStatus.REVERSED
    event.reversed_at = now
    event.reversal_reason = reason or "refund"
    payout_service.detach_event(db, event)

    children = (
        db.query(CommissionEvent)
        .filter(
            CommissionEvent.clinic_id == clinic_id,
            CommissionEvent.original_event_id == event.id,
            CommissionEvent.status.in_(REVERSIBLE_STATUSES),
            CommissionEvent.payout_id.is_(None),
        )
        .all()
    )
    for child in children:
        child.status = CommissionEventStatus.VOIDED
        child.voided_at = now
        child.reversal_reason = "Original conversion refunded"

    db.commit()
    db.refresh(event)
    logger.info("Commission event %s reversed, %s recurring voided", event.id, len(children))
    return CommissionResult(event=event, recurring_events=children)


def void_commission_event(
    db: Session,
    *,
    clinic_id: UUID,
    event_id: UUID,
    reason: str | None = None,
) -> CommissionEvent:
    event = get_event(db, clinic_id=clinic_id, event_id=event_id)
    if event.status == CommissionEventStatus.VOIDED:
        return event
    if event.status in {CommissionEventStatus.PAID, CommissionEventStatus.REVERSED}:
        raise HTTPException(
            status_code=409, detail=f"Cannot void a commission in status {event.status.value}"
        )
    if event.payout_id is not None:
        raise HTTPException(status_code=409, detail="Commission is part of an open payout")

    event.status = CommissionEventStatus.VOIDED
    event.voided_at = _now_utc()
    event.reversal_reason = reason
    db.commit()
    db.refresh(event)
    logger.info("Commission event %s voided", event.id)
    return event
