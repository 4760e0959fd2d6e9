from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from utils import to_iso_utc

logger = logging.getLogger("billing")

UNLIMITED = -1
MB = 1024 * 1024
GB = 1024 * MB

PLANS: dict[str, dict[str, Any]] = {
    "FREE": {
        "name": "Free",
        "price": 0,
        "limits": {"candidates": 10, "interviews": 5, "storage": 100 * MB, "teamMembers": 1},
    },
    "BASIC": {
        "name": "Basic",
        "price": 2900,
        "limits": {"candidates": 100, "interviews": 50, "storage": 1 * GB, "teamMembers": 5},
    },
    "PRO": {
        "name": "Professional",
        "price": 9900,
        "limits": {"candidates": 500, "interviews": 200, "storage": 10 * GB, "teamMembers": 20},
    },
    "ENTERPRISE": {
        "name": "Enterprise",
        "price": 29900,
        "limits": {"candidates": UNLIMITED, "interviews": UNLIMITED, "storage": UNLIMITED, "teamMembers": UNLIMITED},
    },
}

STRIPE_STATUS_MAP = {
    "active": "ACTIVE",
    "canceled": "CANCELLED",
    "incomplete": "INACTIVE",
    "incomplete_expired": "INACTIVE",
    "past_due": "PAST_DUE",
    "unpaid": "UNPAID",
}


def normalize_plan(plan: Any) -> str:
    p = str(plan or "").strip().upper()
    return p if p in PLANS else ""


def get_plan_config(plan: str, cfg=None) -> dict[str, Any]:
    key = normalize_plan(plan) or "FREE"
    out = {**PLANS[key], "limits": dict(PLANS[key]["limits"]), "stripePriceId": ""}
    if cfg is not None:
        out["stripePriceId"] = price_id_for_plan(key, cfg)
    return out


def price_id_for_plan(plan: str, cfg) -> str:
    return {
        "BASIC": cfg.STRIPE_BASIC_PRICE_ID,
        "PRO": cfg.STRIPE_PRO_PRICE_ID,
        "ENTERPRISE": cfg.STRIPE_ENTERPRISE_PRICE_ID,
    }.get(normalize_plan(plan), "") or ""


def plan_for_price_id(price_id: str, cfg) -> str:
    pid = str(price_id or "")
    if pid:
        for plan in ("BASIC", "PRO", "ENTERPRISE"):
            if pid == price_id_for_plan(plan, cfg):
                return plan
    return "FREE"


def map_stripe_status(status: str) -> str:
    return STRIPE_STATUS_MAP.get(str(status or ""), "INACTIVE")


def is_within_limits(usage: float, limit: float) -> bool:
    if limit == UNLIMITED:
        return True
    return usage < limit


def format_price(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def ts_to_iso(ts: Any) -> str:
    try:
        return to_iso_utc(datetime.fromtimestamp(int(ts), tz=timezone.utc))
    except (TypeError, ValueError):
        return ""


def stripe_field(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        value = getattr(obj, key, default)
    return default if value is None else value


def subscription_period(sub: Any) -> tuple[str, str]:
    # Newer API versions moved the period onto subscription items.
    start = stripe_field(sub, "current_period_start")
    end = stripe_field(sub, "current_period_end")
    if start is None or end is None:
        items = stripe_field(stripe_field(sub, "items", {}), "data", [])
        if items:
            start = start if start is not None else stripe_field(items[0], "current_period_start")
            end = end if end is not None else stripe_field(items[0], "current_period_end")
    return ts_to_iso(start), ts_to_iso(end)


def subscription_price_id(sub: Any) -> str:
    items = stripe_field(stripe_field(sub, "items", {}), "data", [])
    if not items:
        return ""
    return str(stripe_field(stripe_field(items[0], "price", {}), "id", "") or "")


class BillingConfigError(Exception):
    pass


class StripeGateway:
    """Thin wrapper over the Stripe SDK calls the billing actions use."""

    def __init__(self, secret_key: str, webhook_secret: str = ""):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        if secret_key:
            stripe.api_key = secret_key

    @classmethod
    def from_config(cls, cfg) -> "StripeGateway":
        return cls(cfg.STRIPE_SECRET_KEY, cfg.STRIPE_WEBHOOK_SECRET)

    def _require_key(self) -> None:
        if not self.secret_key:
            raise BillingConfigError("Billing is not configured")

    def create_customer(self, email: str, name: str, organization_id: str):
        self._require_key()
        return stripe.Customer.create(email=email, name=name, metadata={"organizationId": organization_id})

    def create_subscription(self, customer_id: str, price_id: str, organization_id: str):
        self._require_key()
        return stripe.Subscription.create(
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.payment_intent"],
            metadata={"organizationId": organization_id},
        )

    def update_subscription(self, subscription_id: str, new_price_id: str):
        self._require_key()
        current = stripe.Subscription.retrieve(subscription_id)
        item_id = current["items"]["data"][0]["id"]
        return stripe.Subscription.modify(
            subscription_id,
            items=[{"id": item_id, "price": new_price_id}],
            proration_behavior="always_invoice",
        )

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool):
        self._require_key()
        return stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)

    def create_portal_session(self, customer_id: str, return_url: str):
        self._require_key()
        return stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)

    def construct_event(self, payload: bytes, signature: str):
        if not self.webhook_secret:
            raise BillingConfigError("STRIPE_WEBHOOK_SECRET is not configured")
        return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)


def client_secret_of(subscription: Any) -> Optional[str]:
    invoice = stripe_field(subscription, "latest_invoice")
    intent = stripe_field(invoice, "payment_intent")
    secret = stripe_field(intent, "client_secret")
    return str(secret) if secret else None
