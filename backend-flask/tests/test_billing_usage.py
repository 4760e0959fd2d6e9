import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import pytest
import stripe
from sqlalchemy import select

from conftest import add_user, candidate_payload, login_as, set_plan
from models import AuditLog, Organization, Subscription
from services.billing import (
    PLANS,
    UNLIMITED,
    format_price,
    get_plan_config,
    is_within_limits,
    map_stripe_status,
    plan_for_price_id,
    subscription_period,
)
from services.usage import can_perform_action, format_storage_usage, get_usage_trends, record_usage_metric


class FakeGateway:
    def __init__(self, fail_with=None, fail_on=None):
        self.calls = []
        self.fail_with = fail_with
        self.fail_on = fail_on

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail_with is not None and self.fail_on in (None, name):
            raise self.fail_with

    def create_customer(self, email, name, organization_id):
        self._record("create_customer", email, name, organization_id)
        return {"id": "cus_1"}

    def create_subscription(self, customer_id, price_id, organization_id):
        self._record("create_subscription", customer_id, price_id, organization_id)
        return {
            "id": "sub_1",
            "status": "incomplete",
            "current_period_start": 1700000000,
            "current_period_end": 1702592000,
            "cancel_at_period_end": False,
            "latest_invoice": {"payment_intent": {"client_secret": "pi_secret"}},
        }

    def update_subscription(self, subscription_id, new_price_id):
        self._record("update_subscription", subscription_id, new_price_id)
        return {"id": subscription_id, "status": "active"}

    def set_cancel_at_period_end(self, subscription_id, cancel):
        self._record("set_cancel_at_period_end", subscription_id, cancel)
        return {"id": subscription_id, "cancel_at_period_end": cancel}

    def create_portal_session(self, customer_id, return_url):
        self._record("create_portal_session", customer_id, return_url)
        return {"url": "https://billing.example.test/session"}

    def construct_event(self, payload, signature):
        if signature != "good":
            raise stripe.SignatureVerificationError("No signatures found", signature)
        return json.loads(payload)


@pytest.fixture
def gateway(app):
    gw = FakeGateway()
    app.config["STRIPE_GATEWAY_FACTORY"] = lambda c: gw
    return gw


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _post_event(client, event, signature="good"):
    return client.post("/billing/webhook", data=json.dumps(event), headers={"Stripe-Signature": signature})


def _subscription_obj(org_id, price="price_pro", status="active", sub_id="sub_remote"):
    return {
        "id": sub_id,
        "customer": "cus_remote",
        "status": status,
        "metadata": {"organizationId": org_id},
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": price}, "current_period_start": 1700000000, "current_period_end": 1702592000}]},
    }


# Plans and formatting


def test_plan_helpers(cfg):
    assert format_price(2900) == "$29.00"
    assert format_price(0) == "$0.00"
    assert is_within_limits(9, 10)
    assert not is_within_limits(10, 10)
    assert is_within_limits(10**9, UNLIMITED)
    assert map_stripe_status("past_due") == "PAST_DUE"
    assert map_stripe_status("trialing") == "INACTIVE"
    assert plan_for_price_id("price_basic", cfg) == "BASIC"
    assert plan_for_price_id("price_unknown", cfg) == "FREE"
    assert plan_for_price_id("", cfg) == "FREE"


def test_get_plan_config_copies_limits(cfg):
    conf = get_plan_config("pro", cfg)
    assert conf["name"] == "Professional"
    assert conf["stripePriceId"] == "price_pro"
    conf["limits"]["candidates"] = 1
    assert PLANS["PRO"]["limits"]["candidates"] == 500
    assert get_plan_config("bogus")["name"] == "Free"


def test_subscription_period_falls_back_to_items():
    start, end = subscription_period({"items": {"data": [{"current_period_start": 0, "current_period_end": 86400}]}})
    assert start == "1970-01-01T00:00:00Z"
    assert end == "1970-01-02T00:00:00Z"
    assert subscription_period({}) == ("", "")


def test_format_storage_usage():
    assert format_storage_usage(0) == "0 B"
    assert format_storage_usage(512) == "512 B"
    assert format_storage_usage(1536) == "1.5 KB"
    assert format_storage_usage(1048576) == "1 MB"


# Usage


def test_usage_metrics_upsert_and_trends(db, admin):
    org_id = admin["organizationId"]
    march = datetime(2026, 3, 15, tzinfo=timezone.utc)

    first = record_usage_metric(db, org_id, "api_calls", 5, now=march)
    db.commit()
    second = record_usage_metric(db, org_id, "api_calls", 7, now=march)
    db.commit()
    assert first.id == second.id
    assert second.date == "2026-03-01"
    assert second.value == 7

    record_usage_metric(db, org_id, "api_calls", 1, period="daily", now=datetime(2026, 3, 10, tzinfo=timezone.utc))
    record_usage_metric(db, org_id, "api_calls", 2, period="daily", now=datetime(2026, 3, 14, tzinfo=timezone.utc))
    db.commit()

    week = get_usage_trends(db, org_id, "api_calls", period="daily", days=7, now=march)
    assert week == [{"date": "2026-03-10", "value": 1}, {"date": "2026-03-14", "value": 2}]
    assert get_usage_trends(db, org_id, "api_calls", period="daily", days=3, now=march) == [{"date": "2026-03-14", "value": 2}]

    with pytest.raises(ValueError):
        record_usage_metric(db, org_id, "api_calls", 1, period="yearly")


def test_can_perform_action_reports_reason(db, api, admin):
    api.ok("CANDIDATE_CREATE", candidate_payload(), admin["token"])

    allowed, reason = can_perform_action(db, admin["organizationId"], "candidates", additional=9)
    assert allowed and reason is None

    allowed, reason = can_perform_action(db, admin["organizationId"], "candidates", additional=10)
    assert not allowed
    assert reason == "Candidate limit reached (1/10). Please upgrade your plan."

    allowed, reason = can_perform_action(db, admin["organizationId"], "storage", additional=200 * 1024 * 1024)
    assert not allowed
    assert reason.startswith("Storage limit reached (0 B of 100 MB)")

    set_plan(db, admin["organizationId"], "ENTERPRISE")
    assert can_perform_action(db, admin["organizationId"], "candidates", additional=10**6) == (True, None)

    with pytest.raises(ValueError):
        can_perform_action(db, admin["organizationId"], "widgets")


def test_usage_report_api(api, admin):
    api.ok("CANDIDATE_CREATE", candidate_payload(), admin["token"])
    api.ok("CANDIDATE_CREATE", candidate_payload(email="ada@example.com", name="Ada Lovelace"), admin["token"])

    report = api.ok("USAGE_REPORT", {}, admin["token"])

    assert report["plan"] == "FREE"
    assert report["planName"] == "Free"
    assert report["usage"]["candidates"] == 2
    assert report["usage"]["teamMembers"] == 1
    assert report["percentUsed"]["candidates"] == 20.0
    assert report["withinLimits"]["candidates"] is True
    assert report["withinLimits"]["teamMembers"] is False


def test_subscription_get(api, admin):
    out = api.ok("SUBSCRIPTION_GET", {}, admin["token"])
    assert out["plan"] == {"key": "FREE", "name": "Free", "price": 0, "priceFormatted": "$0.00"}
    assert out["limits"]["interviews"] == 5
    assert out["subscription"] is None


# Subscription management


def test_create_paid_subscription(db, api, admin, gateway):
    out = api.ok("SUBSCRIPTION_MANAGE", {"action": "create", "plan": "pro"}, admin["token"])

    assert out["plan"] == "PRO"
    assert out["clientSecret"] == "pi_secret"
    assert out["subscription"]["status"] == "INACTIVE"
    assert out["subscription"]["currentPeriodStart"] == "2023-11-14T22:13:20Z"
    assert [c[0] for c in gateway.calls] == ["create_customer", "create_subscription"]
    assert gateway.calls[0][1] == "admin@acme.io"
    assert gateway.calls[1][1:3] == ("cus_1", "price_pro")

    org = db.get(Organization, admin["organizationId"])
    assert org.plan == "PRO"
    assert org.stripeCustomerId == "cus_1"
    audit = db.execute(select(AuditLog).where(AuditLog.action == "SUBSCRIPTION_CREATE")).scalar_one()
    assert (audit.fromState, audit.toState) == ("FREE", "PRO")


def test_update_cancel_resume_and_portal(db, api, admin, gateway):
    api.ok("SUBSCRIPTION_MANAGE", {"action": "create", "plan": "BASIC"}, admin["token"])

    updated = api.ok("SUBSCRIPTION_MANAGE", {"action": "update", "plan": "ENTERPRISE"}, admin["token"])
    assert updated["plan"] == "ENTERPRISE"
    assert updated["subscription"]["status"] == "ACTIVE"
    assert updated["subscription"]["stripePriceId"] == "price_enterprise"

    cancelled = api.ok("SUBSCRIPTION_MANAGE", {"action": "cancel"}, admin["token"])
    assert cancelled["subscription"]["cancelAtPeriodEnd"] is True
    resumed = api.ok("SUBSCRIPTION_MANAGE", {"action": "resume"}, admin["token"])
    assert resumed["subscription"]["cancelAtPeriodEnd"] is False
    assert ("set_cancel_at_period_end", "sub_1", True) in gateway.calls

    portal = api.ok("SUBSCRIPTION_MANAGE", {"action": "billing-portal"}, admin["token"])
    assert portal["url"] == "https://billing.example.test/session"
    assert gateway.calls[-1] == ("create_portal_session", "cus_1", "http://localhost:3000/billing")


def test_downgrade_to_free_needs_no_processor(db, api, admin, gateway):
    set_plan(db, admin["organizationId"], "BASIC")

    out = api.ok("SUBSCRIPTION_MANAGE", {"action": "create", "plan": "FREE"}, admin["token"])

    assert out == {"plan": "FREE", "subscription": None, "clientSecret": None}
    assert gateway.calls == []


def test_manage_errors(api, admin, gateway, cfg):
    status, body = api.call("SUBSCRIPTION_MANAGE", {"action": "cancel"}, admin["token"])
    assert status == 404
    assert body["error"]["message"] == "No active subscription"

    status, body = api.call("SUBSCRIPTION_MANAGE", {"action": "billing-portal"}, admin["token"])
    assert status == 404

    status, _ = api.call("SUBSCRIPTION_MANAGE", {"action": "refund"}, admin["token"])
    assert status == 400
    status, _ = api.call("SUBSCRIPTION_MANAGE", {"action": "create", "plan": "GOLD"}, admin["token"])
    assert status == 400

    cfg.STRIPE_PRO_PRICE_ID = ""
    status, body = api.call("SUBSCRIPTION_MANAGE", {"action": "create", "plan": "PRO"}, admin["token"])
    assert status == 400
    assert body["error"]["message"] == "Plan PRO has no configured price"


def test_processor_failure_is_upstream_error(app, db, api, admin):
    app.config["STRIPE_GATEWAY_FACTORY"] = lambda c: FakeGateway(fail_with=stripe.StripeError("card network down"))

    status, body = api.call("SUBSCRIPTION_MANAGE", {"action": "create", "plan": "PRO"}, admin["token"])

    assert status == 502
    assert body["error"]["code"] == "UPSTREAM"
    db.expire_all()
    assert db.get(Organization, admin["organizationId"]).plan == "FREE"


def test_customer_survives_failed_subscription(app, db, api, admin):
    gw = FakeGateway(fail_with=stripe.StripeError("card declined"), fail_on="create_subscription")
    app.config["STRIPE_GATEWAY_FACTORY"] = lambda c: gw

    status, _ = api.call("SUBSCRIPTION_MANAGE", {"action": "create", "plan": "PRO"}, admin["token"])

    assert status == 502
    db.expire_all()
    org = db.get(Organization, admin["organizationId"])
    assert (org.plan, org.stripeCustomerId) == ("FREE", "cus_1")

    gw.fail_with = None
    api.ok("SUBSCRIPTION_MANAGE", {"action": "create", "plan": "PRO"}, admin["token"])
    assert [c[0] for c in gw.calls] == ["create_customer", "create_subscription", "create_subscription"]
    assert gw.calls[-1][1] == "cus_1"


def test_missing_billing_configuration_is_bad_request(api, admin, cfg):
    cfg.STRIPE_SECRET_KEY = ""

    status, body = api.call("SUBSCRIPTION_MANAGE", {"action": "create", "plan": "PRO"}, admin["token"])

    assert status == 400
    assert body["error"]["message"] == "Billing is not configured"


def test_only_admins_manage_subscriptions(db, api, admin):
    add_user(db, admin["organizationId"], "RECRUITER", "rita@acme.io")
    token = login_as(api, "rita@acme.io")

    status, body = api.call("SUBSCRIPTION_MANAGE", {"action": "create", "plan": "PRO"}, token)
    assert status == 403
    assert body["error"]["code"] == "FORBIDDEN"
    assert api.ok("USAGE_REPORT", {}, token)["plan"] == "FREE"


# Webhooks


def test_webhook_requires_valid_signature(client, gateway):
    resp = client.post("/billing/webhook", data="{}")
    assert resp.status_code == 400
    assert resp.get_json()["error"]["message"] == "Missing Stripe-Signature header"

    resp = _post_event(client, _event("customer.created", {}), signature="forged")
    assert resp.status_code == 400
    assert resp.get_json()["error"]["message"] == "Invalid webhook signature"


def test_subscription_created_and_deleted_events(client, db, admin, gateway):
    org_id = admin["organizationId"]

    resp = _post_event(client, _event("customer.subscription.created", _subscription_obj(org_id)))
    assert resp.status_code == 200
    assert resp.get_json()["data"] == {"received": True, "handled": True}

    sub = db.execute(select(Subscription).where(Subscription.stripeSubscriptionId == "sub_remote")).scalar_one()
    assert (sub.plan, sub.status) == ("PRO", "ACTIVE")
    assert sub.currentPeriodEnd == "2023-12-14T22:13:20Z"
    assert db.get(Organization, org_id).plan == "PRO"

    _post_event(client, _event("customer.subscription.updated", _subscription_obj(org_id, price="price_basic"), "evt_2"))
    db.expire_all()
    assert db.get(Organization, org_id).plan == "BASIC"
    assert db.execute(select(Subscription)).scalars().all() == [sub]

    _post_event(client, _event("customer.subscription.deleted", {"id": "sub_remote"}, "evt_3"))
    db.expire_all()
    assert db.get(Subscription, sub.id).status == "CANCELLED"
    assert db.get(Organization, org_id).plan == "FREE"

    audits = db.execute(select(AuditLog).where(AuditLog.stageTag == "BILLING_WEBHOOK")).scalars().all()
    assert {a.entityId for a in audits} == {"evt_1", "evt_2", "evt_3"}
    assert all(a.organizationId == org_id for a in audits)


def test_invoice_events_update_status(client, db, admin, gateway):
    org_id = admin["organizationId"]
    _post_event(client, _event("customer.subscription.created", _subscription_obj(org_id, status="incomplete")))

    _post_event(client, _event("invoice.payment_failed", {"subscription": "sub_remote"}, "evt_2"))
    sub = db.execute(select(Subscription)).scalar_one()
    assert sub.status == "PAST_DUE"

    invoice = {"parent": {"subscription_details": {"subscription": "sub_remote"}}}
    _post_event(client, _event("invoice.payment_succeeded", invoice, "evt_3"))
    db.expire_all()
    assert db.get(Subscription, sub.id).status == "ACTIVE"


def test_customer_created_links_customer(client, db, admin, gateway):
    obj = {"id": "cus_new", "metadata": {"organizationId": admin["organizationId"]}}

    _post_event(client, _event("customer.created", obj))

    assert db.get(Organization, admin["organizationId"]).stripeCustomerId == "cus_new"


def test_unknown_events_are_acknowledged(client, gateway):
    resp = _post_event(client, _event("charge.refunded", {"id": "ch_1"}))
    assert resp.status_code == 200
    assert resp.get_json()["data"]["handled"] is False


def test_webhook_signed_with_stripe_scheme(client, db, admin):
    payload = json.dumps(_event("customer.created", {"id": "cus_signed", "metadata": {"organizationId": admin["organizationId"]}}))
    ts = int(time.time())
    signature = hmac.new(b"whsec_test", f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()

    resp = client.post("/billing/webhook", data=payload, headers={"Stripe-Signature": f"t={ts},v1={signature}"})

    assert resp.status_code == 200
    assert db.get(Organization, admin["organizationId"]).stripeCustomerId == "cus_signed"

    resp = client.post("/billing/webhook", data=payload, headers={"Stripe-Signature": f"t={ts},v1={'0' * 64}"})
    assert resp.status_code == 400


def test_usage_report_trends(api, admin):
    token = admin["token"]
    cand = api.ok("CANDIDATE_CREATE", candidate_payload(), token)
    interview = api.ok("INTERVIEW_CREATE", {"title": "Backend screen", "candidateId": cand["id"]}, token)
    api.ok("INTERVIEW_MANAGE", {"id": interview["id"], "action": "start"}, token)
    api.ok("INTERVIEW_MANAGE", {"id": interview["id"], "action": "complete"}, token)

    trends = api.ok("USAGE_REPORT", {"days": 7}, token)["trends"]

    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    # The report call itself is counted after it responds.
    assert trends["api_calls"] == [{"date": today, "value": 4}]
    assert trends["interviews_completed"] == [{"date": today, "value": 1}]
    assert api.ok("USAGE_REPORT", {}, token)["trends"]["api_calls"] == [{"date": today, "value": 5}]

    for days in (0, 366):
        status, body = api.call("USAGE_REPORT", {"days": days}, token)
        assert (status, body["error"]["message"]) == (400, "days must be between 1 and 365")


def test_api_calls_are_counted_per_organization(db, api, admin):
    other = api.register_and_login(email="boss@globex.io", company="Globex")
    api.ok("GET_ME", {}, admin["token"])
    api.ok("GET_ME", {}, admin["token"])
    api.ok("ANALYTICS_TRACK", {"event": "landing_view"})

    assert get_usage_trends(db, admin["organizationId"], "api_calls")[0]["value"] == 2
    assert get_usage_trends(db, other["organizationId"], "api_calls") == []
