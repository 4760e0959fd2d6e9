from __future__ import annotations

import logging

import stripe
from sqlalchemy import select

from actions.helpers import append_audit, get_organization, new_id, require_auth, stripe_gateway
from models import Organization, Subscription, User
from services.billing import (
    BillingConfigError,
    client_secret_of,
    format_price,
    get_plan_config,
    map_stripe_status,
    normalize_plan,
    plan_for_price_id,
    price_id_for_plan,
    stripe_field,
    subscription_period,
    subscription_price_id,
)
from services.usage import TREND_METRICS, get_usage_report, get_usage_trends
from utils import ApiError, AuthContext, iso_utc_now, to_int

logger = logging.getLogger("billing")

MANAGE_ACTIONS = {"create", "update", "cancel", "resume", "billing-portal"}


def subscription_to_dict(s: Subscription | None):
    if s is None:
        return None
    return {
        "id": s.id,
        "plan": s.plan,
        "status": s.status,
        "currentPeriodStart": s.currentPeriodStart or "",
        "currentPeriodEnd": s.currentPeriodEnd or "",
        "cancelAtPeriodEnd": bool(s.cancelAtPeriodEnd),
        "stripeSubscriptionId": s.stripeSubscriptionId or "",
        "stripePriceId": s.stripePriceId or "",
        "createdAt": s.createdAt,
        "updatedAt": s.updatedAt,
    }


def latest_subscription(db, organization_id: str) -> Subscription | None:
    return (
        db.execute(
            select(Subscription)
            .where(Subscription.organizationId == organization_id)
            .order_by(Subscription.createdAt.desc())
        )
        .scalars()
        .first()
    )


def subscription_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    org = get_organization(db, auth.organizationId)
    plan = get_plan_config(org.plan)
    return {
        "organization": {"id": org.id, "name": org.name, "plan": org.plan, "isActive": bool(org.isActive)},
        "plan": {"key": org.plan, "name": plan["name"], "price": plan["price"], "priceFormatted": format_price(plan["price"])},
        "limits": plan["limits"],
        "subscription": subscription_to_dict(latest_subscription(db, org.id)),
    }


def _require_subscription(db, organization_id: str) -> Subscription:
    sub = latest_subscription(db, organization_id)
    if not sub or not sub.stripeSubscriptionId:
        raise ApiError("NOT_FOUND", "No active subscription")
    return sub


def _price_for(plan: str, cfg) -> str:
    price_id = price_id_for_plan(plan, cfg)
    if not price_id:
        raise ApiError("BAD_REQUEST", f"Plan {plan} has no configured price")
    return price_id


def _create(db, auth: AuthContext, org: Organization, plan: str, cfg) -> dict:
    now = iso_utc_now()
    if plan == "FREE":
        org.plan = "FREE"
        org.updatedAt = now
        return {"plan": "FREE", "subscription": None, "clientSecret": None}

    price_id = _price_for(plan, cfg)
    gateway = stripe_gateway(cfg)

    if not org.stripeCustomerId:
        admin = db.get(User, auth.userId)
        customer = gateway.create_customer(admin.email if admin else auth.email, org.name, org.id)
        org.stripeCustomerId = str(stripe_field(customer, "id", ""))
        org.updatedAt = now
        # Kept even if the subscription call below fails, so a retry reuses this customer.
        db.commit()
        logger.info("stripe customer created org=%s customer=%s", org.id, org.stripeCustomerId)

    remote = gateway.create_subscription(org.stripeCustomerId, price_id, org.id)
    start, end = subscription_period(remote)
    sub = Subscription(
        id=new_id(),
        organizationId=org.id,
        plan=plan,
        status=map_stripe_status(stripe_field(remote, "status", "")),
        currentPeriodStart=start,
        currentPeriodEnd=end,
        cancelAtPeriodEnd=bool(stripe_field(remote, "cancel_at_period_end", False)),
        stripeCustomerId=org.stripeCustomerId,
        stripeSubscriptionId=str(stripe_field(remote, "id", "")),
        stripePriceId=price_id,
        createdAt=now,
        updatedAt=now,
    )
    db.add(sub)
    org.plan = plan
    org.updatedAt = now
    return {"plan": plan, "subscription": subscription_to_dict(sub), "clientSecret": client_secret_of(remote)}


def subscription_manage(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    act = str((data or {}).get("action") or "").strip().lower()
    if act not in MANAGE_ACTIONS:
        raise ApiError("BAD_REQUEST", "Invalid action")

    org = get_organization(db, auth.organizationId)
    plan = normalize_plan((data or {}).get("plan"))
    if act in {"create", "update"} and not plan:
        raise ApiError("BAD_REQUEST", "Invalid plan")

    from_plan = org.plan
    now = iso_utc_now()
    try:
        if act == "create":
            out = _create(db, auth, org, plan, cfg)
        elif act == "update":
            sub = _require_subscription(db, org.id)
            price_id = _price_for(plan, cfg)
            remote = stripe_gateway(cfg).update_subscription(sub.stripeSubscriptionId, price_id)
            sub.plan = plan
            sub.stripePriceId = price_id
            sub.status = map_stripe_status(stripe_field(remote, "status", ""))
            sub.updatedAt = now
            org.plan = plan
            org.updatedAt = now
            out = {"plan": plan, "subscription": subscription_to_dict(sub)}
        elif act in {"cancel", "resume"}:
            sub = _require_subscription(db, org.id)
            stripe_gateway(cfg).set_cancel_at_period_end(sub.stripeSubscriptionId, act == "cancel")
            sub.cancelAtPeriodEnd = act == "cancel"
            sub.updatedAt = now
            out = {"plan": org.plan, "subscription": subscription_to_dict(sub)}
        else:
            if not org.stripeCustomerId:
                raise ApiError("NOT_FOUND", "No billing account for this organization")
            session = stripe_gateway(cfg).create_portal_session(org.stripeCustomerId, f"{cfg.APP_BASE_URL}/billing")
            out = {"url": str(stripe_field(session, "url", ""))}
    except BillingConfigError as e:
        raise ApiError("BAD_REQUEST", str(e))
    except stripe.StripeError as e:
        logger.error("stripe call failed org=%s action=%s error=%s", org.id, act, e)
        raise ApiError("UPSTREAM", "Payment processor error")

    append_audit(
        db,
        entityType="SUBSCRIPTION",
        entityId=org.id,
        action=f"SUBSCRIPTION_{act.upper().replace('-', '_')}",
        stageTag="BILLING",
        fromState=from_plan,
        toState=org.plan,
        actor=auth,
        at=now,
    )
    logger.info("subscription %s org=%s plan=%s->%s", act, org.id, from_plan, org.plan)
    return out


def usage_report(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    days = to_int((data or {}).get("days"), 30)
    if days < 1 or days > 365:
        raise ApiError("BAD_REQUEST", "days must be between 1 and 365")
    report = get_usage_report(db, auth.organizationId)
    report["trends"] = {m: get_usage_trends(db, auth.organizationId, m, period="daily", days=days) for m in TREND_METRICS}
    return report


# Webhook


def _org_for(db, obj) -> Organization | None:
    metadata = stripe_field(obj, "metadata", {}) or {}
    org_id = stripe_field(metadata, "organizationId", "")
    if org_id:
        org = db.get(Organization, str(org_id))
        if org:
            return org
    customer = stripe_field(obj, "customer", "")
    if isinstance(customer, str) and customer:
        return db.execute(select(Organization).where(Organization.stripeCustomerId == customer)).scalars().first()
    return None


def _find_by_remote_id(db, remote_id: str) -> Subscription | None:
    if not remote_id:
        return None
    return db.execute(select(Subscription).where(Subscription.stripeSubscriptionId == remote_id)).scalar_one_or_none()


def _invoice_subscription_id(invoice) -> str:
    sid = stripe_field(invoice, "subscription", "")
    if not sid:
        details = stripe_field(stripe_field(invoice, "parent", {}), "subscription_details", {})
        sid = stripe_field(details, "subscription", "")
    return sid if isinstance(sid, str) else str(stripe_field(sid, "id", ""))


def _upsert_subscription(db, obj, cfg) -> Organization | None:
    org = _org_for(db, obj)
    if org is None:
        logger.warning("webhook subscription without organization id=%s", stripe_field(obj, "id", ""))
        return None

    now = iso_utc_now()
    remote_id = str(stripe_field(obj, "id", ""))
    price_id = subscription_price_id(obj)
    plan = plan_for_price_id(price_id, cfg)
    start, end = subscription_period(obj)

    sub = _find_by_remote_id(db, remote_id)
    if sub is None:
        sub = Subscription(id=new_id(), organizationId=org.id, stripeSubscriptionId=remote_id, createdAt=now)
        db.add(sub)
    sub.plan = plan
    sub.status = map_stripe_status(stripe_field(obj, "status", ""))
    sub.currentPeriodStart = start
    sub.currentPeriodEnd = end
    sub.cancelAtPeriodEnd = bool(stripe_field(obj, "cancel_at_period_end", False))
    sub.stripeCustomerId = str(stripe_field(obj, "customer", "") or "")
    sub.stripePriceId = price_id
    sub.updatedAt = now

    org.plan = plan
    org.updatedAt = now
    return org


def _subscription_deleted(db, obj, cfg) -> Organization | None:
    now = iso_utc_now()
    sub = _find_by_remote_id(db, str(stripe_field(obj, "id", "")))
    if sub is not None:
        sub.status = "CANCELLED"
        sub.updatedAt = now
    org = db.get(Organization, sub.organizationId) if sub is not None else _org_for(db, obj)
    if org is not None:
        org.plan = "FREE"
        org.updatedAt = now
    return org


def _payment_succeeded(db, obj, cfg) -> Organization | None:
    now = iso_utc_now()
    sub = _find_by_remote_id(db, _invoice_subscription_id(obj))
    if sub is None:
        return _org_for(db, obj)
    sub.status = "ACTIVE"
    sub.updatedAt = now
    org = db.get(Organization, sub.organizationId)
    if org is not None:
        org.isActive = True
        org.updatedAt = now
    return org


def _payment_failed(db, obj, cfg) -> Organization | None:
    sub = _find_by_remote_id(db, _invoice_subscription_id(obj))
    if sub is None:
        return _org_for(db, obj)
    sub.status = "PAST_DUE"
    sub.updatedAt = iso_utc_now()
    return db.get(Organization, sub.organizationId)


def _customer_created(db, obj, cfg) -> Organization | None:
    org = _org_for(db, obj)
    if org is None:
        return None
    org.stripeCustomerId = str(stripe_field(obj, "id", ""))
    org.updatedAt = iso_utc_now()
    return org


# Each handler returns the organization it touched, if any.
WEBHOOK_HANDLERS = {
    "customer.subscription.created": _upsert_subscription,
    "customer.subscription.updated": _upsert_subscription,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.payment_succeeded": _payment_succeeded,
    "invoice.payment_failed": _payment_failed,
    "customer.created": _customer_created,
}


def handle_webhook_event(db, event, cfg) -> bool:
    """Apply a verified Stripe event. Returns False for event types we ignore."""
    event_type = str(stripe_field(event, "type", ""))
    obj = stripe_field(stripe_field(event, "data", {}), "object", {})
    handler = WEBHOOK_HANDLERS.get(event_type)
    if handler is None:
        logger.info("unhandled webhook event type=%s", event_type)
        return False

    org = handler(db, obj, cfg)
    append_audit(
        db,
        entityType="BILLING_EVENT",
        entityId=str(stripe_field(event, "id", "")),
        action=event_type,
        stageTag="BILLING_WEBHOOK",
        actor=None,
        organizationId=org.id if org else "",
    )
    logger.info("webhook processed type=%s id=%s", event_type, stripe_field(event, "id", ""))
    return True
