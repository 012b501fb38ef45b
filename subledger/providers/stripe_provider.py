import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import stripe
from stripe import StripeClient

from subledger.services.errors import ProviderAuthError, ProviderError
from subledger.utils.helpers import from_timestamp, jsonable, to_timestamp
from .base import (
    BillingProvider,
    Capability,
    CustomerSnapshot,
    EventKind,
    ItemSnapshot,
    PaymentRequest,
    ProviderEvent,
    ProviderResult,
    RefundRequest,
    ScheduleRequest,
    SubscriptionRequest,
    SubscriptionSnapshot,
    SubscriptionUpdate,
    UsageRequest,
    wire_call,
)

_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "canceled": "canceled",
    "incomplete": "incomplete",
    "incomplete_expired": "expired",
    "unpaid": "unpaid",
    "paused": "paused",
}

_SUBSCRIPTION_EVENTS = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_CANCELED,
    "customer.subscription.paused": EventKind.SUBSCRIPTION_PAUSED,
    "customer.subscription.resumed": EventKind.SUBSCRIPTION_RESUMED,
}

_PAYMENT_EVENTS = {
    "invoice.paid": EventKind.PAYMENT_SUCCEEDED,
    "invoice.payment_succeeded": EventKind.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.PAYMENT_FAILED,
}

# Stripe only accepts these refund reasons; anything else travels in metadata
_REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})


def make_idempotency_key(scope: str, *parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return f"{scope}:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def _params_hash(d: Dict[str, Any]) -> str:
    # Stable across runs if params identical; changes when you change fields
    return hashlib.sha256(json.dumps(d, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")).hexdigest()[:16]


def _as_dict(obj: Any) -> Dict[str, Any]:
    # Stripe objects may need converting to dicts
    if obj is None:
        return {}
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, Mapping):
        return dict(obj)
    return jsonable(obj)


def _ref_id(value: Any) -> Optional[str]:
    """Stripe fields hold either an id or an expanded object."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value


class StripeProvider(BillingProvider):
    name = "stripe"
    capabilities = frozenset(Capability)
    # Stripe changes subscriptions on its own (renewals, dunning); re-read on every lookup
    cache_goes_stale = True
    required_fields = {
        "create_subscription": ("customer_id", "price_id"),
        "report_usage": ("subscription_item_id", "quantity"),
    }

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str] = None,
                 meter_event_name: Optional[str] = None):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._meter_event_name = meter_event_name
        self._client: Optional[StripeClient] = None

    def client(self) -> StripeClient:
        if self._client is None:
            if not self._secret_key:
                raise ProviderAuthError("STRIPE_SECRET_KEY is not configured", provider=self.name)
            self._client = StripeClient(self._secret_key)
        return self._client

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def translate_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError, stripe.SignatureVerificationError)):
            return ProviderAuthError(str(exc), provider=self.name, http_status=getattr(exc, "http_status", None))
        if isinstance(exc, stripe.StripeError):
            return ProviderError(
                getattr(exc, "user_message", None) or str(exc),
                provider=self.name,
                code=getattr(exc, "code", None),
                http_status=getattr(exc, "http_status", None),
            )
        return super().translate_error(exc)

    def normalize_status(self, raw_status: Optional[str], pause_collection: Any = None) -> Optional[str]:
        if raw_status is None:
            return None
        status = _STATUS_MAP.get(raw_status, raw_status)
        if status == "active" and pause_collection:
            return "paused"
        return status

    # ----- snapshots -----
    def subscription_snapshot(self, sub: Any) -> SubscriptionSnapshot:
        sub = _as_dict(sub)
        items_block = sub.get("items")
        items = (items_block or {}).get("data") or []
        first = items[0] if items else {}
        price = first.get("price") or first.get("plan") or {}
        pause = sub.get("pause_collection") or None
        details = sub.get("cancellation_details") or {}

        snapshot_items = None
        if items_block is not None:
            snapshot_items = [
                ItemSnapshot(
                    external_id=i.get("id"),
                    price_id=_ref_id(i.get("price") or i.get("plan")),
                    quantity=i.get("quantity") or 1,
                )
                for i in items
            ]

        pause_view = None
        if pause:
            resumes_at = from_timestamp(pause.get("resumes_at"))
            pause_view = {
                "behavior": pause.get("behavior"),
                "resumes_at": resumes_at.isoformat() if resumes_at else None,
            }

        # Newer API versions moved the billing period onto the items
        return SubscriptionSnapshot(
            external_id=sub.get("id"),
            status=self.normalize_status(sub.get("status"), pause),
            customer_external_id=_ref_id(sub.get("customer")),
            plan_id=price.get("id") if isinstance(price, Mapping) else price,
            start_date=from_timestamp(sub.get("start_date")),
            current_period_start=from_timestamp(sub.get("current_period_start") or first.get("current_period_start")),
            current_period_end=from_timestamp(sub.get("current_period_end") or first.get("current_period_end")),
            trial_start=from_timestamp(sub.get("trial_start")),
            trial_end=from_timestamp(sub.get("trial_end")),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            cancellation_reason=details.get("comment") or details.get("reason"),
            pause_collection=pause_view,
            items=snapshot_items,
            metadata=dict(sub.get("metadata") or {}),
            raw=jsonable(sub),
        )

    def customer_snapshot(self, cust: Any) -> CustomerSnapshot:
        cust = _as_dict(cust)
        settings = cust.get("invoice_settings") or {}
        return CustomerSnapshot(
            external_id=cust.get("id"),
            email=cust.get("email"),
            name=cust.get("name"),
            default_payment_method=_ref_id(settings.get("default_payment_method")),
            raw=jsonable(cust),
        )

    def _subscription_result(self, sub: Any) -> ProviderResult:
        return ProviderResult.from_subscription(self.subscription_snapshot(sub))

    def _customer_result(self, cust: Any) -> ProviderResult:
        snap = self.customer_snapshot(cust)
        return ProviderResult(success=True, provider_id=snap.external_id, raw=snap.raw, customer=snap)

    # ----- customers -----
    @wire_call(Capability.CREATE_CUSTOMER)
    def create_customer(self, email, name=None, metadata=None):
        params: Dict[str, Any] = {"email": email}
        if name:
            params["name"] = name
        if metadata:
            params["metadata"] = metadata
        return self._customer_result(self.client().customers.create(params=params))

    @wire_call(Capability.GET_CUSTOMER)
    def get_customer(self, customer_id):
        return self._customer_result(self.client().customers.retrieve(customer_id))

    @wire_call(Capability.UPDATE_CUSTOMER)
    def update_customer(self, customer_id, email=None, name=None, metadata=None):
        params = {k: v for k, v in (("email", email), ("name", name), ("metadata", metadata)) if v is not None}
        return self._customer_result(self.client().customers.update(customer_id, params=params))

    @wire_call(Capability.DELETE_CUSTOMER)
    def delete_customer(self, customer_id):
        deleted = _as_dict(self.client().customers.delete(customer_id))
        return ProviderResult(success=bool(deleted.get("deleted", True)), provider_id=customer_id, raw=deleted)

    @wire_call(Capability.ATTACH_PAYMENT_METHOD)
    def attach_payment_method(self, customer_id, payment_method_id):
        pm = _as_dict(self.client().payment_methods.attach(payment_method_id, params={"customer": customer_id}))
        return ProviderResult(success=True, provider_id=pm.get("id"), raw=pm)

    @wire_call(Capability.SET_DEFAULT_PAYMENT_METHOD)
    def set_default_payment_method(self, customer_id, payment_method_id):
        cust = self.client().customers.update(
            customer_id, params={"invoice_settings": {"default_payment_method": payment_method_id}}
        )
        return self._customer_result(cust)

    # ----- subscriptions -----
    @wire_call(Capability.CREATE_SUBSCRIPTION)
    def create_subscription(self, request: SubscriptionRequest):
        params: Dict[str, Any] = {
            "customer": request.customer_id,
            "items": [{"price": request.price_id, "quantity": request.quantity or 1}],
        }
        if request.metadata:
            params["metadata"] = request.metadata
        if request.trial_period_days:
            params["trial_period_days"] = request.trial_period_days
        if request.cancel_at_period_end:
            params["cancel_at_period_end"] = True

        options: Dict[str, Any] = {}
        if request.idempotency_key:
            # Param-aware idempotency: a retry with identical params replays the original create
            options["idempotency_key"] = make_idempotency_key(
                "subscription", request.idempotency_key, _params_hash(params)
            )
        sub = self.client().subscriptions.create(params=params, options=options)
        return self._subscription_result(sub)

    @wire_call(Capability.GET_SUBSCRIPTION)
    def get_subscription(self, subscription_id):
        return self._subscription_result(self.client().subscriptions.retrieve(subscription_id))

    def _first_item_id(self, subscription_id: str) -> Optional[str]:
        sub = _as_dict(self.client().subscriptions.retrieve(subscription_id))
        items = (sub.get("items") or {}).get("data") or []
        return items[0].get("id") if items else None

    @wire_call(Capability.UPDATE_SUBSCRIPTION)
    def update_subscription(self, subscription_id, update: SubscriptionUpdate):
        params: Dict[str, Any] = {}
        if update.items is not None:
            params["items"] = update.items
        elif update.price_id or update.quantity is not None:
            item: Dict[str, Any] = {"id": self._first_item_id(subscription_id)}
            if update.price_id:
                item["price"] = update.price_id
            if update.quantity is not None:
                item["quantity"] = update.quantity
            params["items"] = [item]
        if update.metadata is not None:
            params["metadata"] = update.metadata
        if update.cancel_at_period_end is not None:
            params["cancel_at_period_end"] = update.cancel_at_period_end
        if update.trial_end is not None:
            params["trial_end"] = to_timestamp(update.trial_end) if isinstance(update.trial_end, datetime) else update.trial_end
        if update.proration_behavior:
            params["proration_behavior"] = update.proration_behavior
        if update.billing_cycle_anchor:
            params["billing_cycle_anchor"] = update.billing_cycle_anchor
        sub = self.client().subscriptions.update(subscription_id, params=params)
        return self._subscription_result(sub)

    @wire_call(Capability.PAUSE_SUBSCRIPTION)
    def pause_subscription(self, subscription_id, resume_at=None, reason=None):
        pause: Dict[str, Any] = {"behavior": "void"}
        if resume_at:
            pause["resumes_at"] = to_timestamp(resume_at)
        params: Dict[str, Any] = {"pause_collection": pause}
        if reason:
            params["metadata"] = {"pause_reason": reason}
        return self._subscription_result(self.client().subscriptions.update(subscription_id, params=params))

    @wire_call(Capability.RESUME_SUBSCRIPTION)
    def resume_subscription(self, subscription_id, reason=None):
        # Empty string unsets pause_collection
        params: Dict[str, Any] = {"pause_collection": ""}
        return self._subscription_result(self.client().subscriptions.update(subscription_id, params=params))

    @wire_call(Capability.CANCEL_SUBSCRIPTION)
    def cancel_subscription(self, subscription_id, reason=None, at_period_end=False):
        details = {"comment": reason} if reason else None
        if at_period_end:
            params: Dict[str, Any] = {"cancel_at_period_end": True}
            if details:
                params["cancellation_details"] = details
            sub = self.client().subscriptions.update(subscription_id, params=params)
        else:
            sub = self.client().subscriptions.cancel(
                subscription_id, params={"cancellation_details": details} if details else None
            )
        return self._subscription_result(sub)

    @wire_call(Capability.REPORT_USAGE)
    def report_usage(self, usage: UsageRequest):
        client = self.client()
        usage_records = getattr(client.subscription_items, "usage_records", None)
        if usage_records is not None:
            params = {
                "quantity": int(usage.quantity),
                "timestamp": to_timestamp(usage.timestamp) if usage.timestamp else "now",
                "action": usage.action if usage.action in ("increment", "set") else "increment",
            }
            record = _as_dict(usage_records.create(usage.subscription_item_id, params=params))
            return ProviderResult(success=True, provider_id=record.get("id"), raw=record)

        # SDKs without legacy usage records bill metered prices through meter events
        if not (self._meter_event_name and usage.customer_id):
            raise ProviderError(
                "metered usage needs STRIPE_METER_EVENT_NAME and a customer id",
                provider=self.name,
                code="meter_not_configured",
            )
        params = {
            "event_name": self._meter_event_name,
            "payload": {"stripe_customer_id": usage.customer_id, "value": str(int(usage.quantity))},
        }
        if usage.timestamp:
            params["timestamp"] = to_timestamp(usage.timestamp)
        event = _as_dict(client.billing.meter_events.create(params=params))
        return ProviderResult(success=True, provider_id=event.get("identifier"), raw=event)

    @wire_call(Capability.CREATE_SCHEDULE)
    def create_schedule(self, request: ScheduleRequest):
        client = self.client()
        schedule = _as_dict(client.subscription_schedules.create(params={"from_subscription": request.subscription_id}))
        current = ((schedule.get("phases") or [{}])[0]) or {}

        phases = []
        for idx, phase in enumerate(request.phases):
            entry: Dict[str, Any] = {"items": [{"price": phase.price_id, "quantity": phase.quantity or 1}]}
            start = to_timestamp(phase.start_date) if phase.start_date else (current.get("start_date") if idx == 0 else None)
            if start:
                entry["start_date"] = start
            if phase.end_date:
                entry["end_date"] = to_timestamp(phase.end_date)
            if idx > 0 and request.proration_behavior:
                entry["proration_behavior"] = request.proration_behavior
            phases.append(entry)

        updated = _as_dict(client.subscription_schedules.update(
            schedule.get("id"),
            params={"phases": phases, "end_behavior": request.end_behavior},
        ))
        return ProviderResult(success=True, provider_id=updated.get("id"), status=updated.get("status"), raw=updated)

    @wire_call(Capability.LIST_SUBSCRIPTIONS_FOR_CUSTOMER)
    def list_subscriptions_for_customer(self, customer_id):
        listing = self.client().subscriptions.list(params={"customer": customer_id, "status": "all"})
        snaps = [self.subscription_snapshot(s) for s in (getattr(listing, "data", None) or _as_dict(listing).get("data") or [])]
        return ProviderResult(success=True, provider_id=customer_id, raw=None, subscriptions=snaps)

    # ----- payments -----
    @wire_call(Capability.CREATE_PAYMENT)
    def create_payment(self, request: PaymentRequest):
        params: Dict[str, Any] = {
            "amount": int(request.amount),
            "currency": request.currency.lower(),
            "automatic_payment_methods": {"enabled": True},
        }
        if request.customer_id:
            params["customer"] = request.customer_id
        if request.description:
            params["description"] = request.description
        if request.metadata:
            params["metadata"] = request.metadata
        intent = _as_dict(self.client().payment_intents.create(params=params))
        return ProviderResult(success=True, provider_id=intent.get("id"), status=intent.get("status"), raw=intent)

    @wire_call(Capability.REFUND)
    def refund(self, request: RefundRequest):
        params: Dict[str, Any] = {"payment_intent": request.transaction_id}
        if request.amount is not None:
            params["amount"] = int(request.amount)
        if request.reason in _REFUND_REASONS:
            params["reason"] = request.reason
        elif request.reason:
            params["metadata"] = {"reason": request.reason}
        refund = _as_dict(self.client().refunds.create(params=params))
        return ProviderResult(success=True, provider_id=refund.get("id"), status=refund.get("status"), raw=refund)

    # ----- webhooks -----
    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        if not self._webhook_secret:
            raise ProviderError("Stripe webhook secret not configured", provider=self.name)
        try:
            event = stripe.Webhook.construct_event(
                payload=raw_body.decode("utf-8"),
                sig_header=headers.get("Stripe-Signature", ""),
                secret=self._webhook_secret,
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ProviderAuthError("invalid_signature", provider=self.name) from exc
        return _as_dict(event)

    def parse_event(self, event: Mapping[str, Any]) -> ProviderEvent:
        ev_id = event.get("id")
        ev_type = event.get("type") or ""
        obj = _as_dict((event.get("data") or {}).get("object"))
        occurred_at = from_timestamp(event.get("created"))

        if ev_type in _SUBSCRIPTION_EVENTS:
            snap = self.subscription_snapshot(obj)
            return ProviderEvent(
                event_id=ev_id, event_type=ev_type, kind=_SUBSCRIPTION_EVENTS[ev_type],
                occurred_at=occurred_at, subscription=snap, subscription_id=snap.external_id,
            )

        if ev_type in _PAYMENT_EVENTS:
            # Newer API versions nest the subscription under parent.subscription_details
            parent = (obj.get("parent") or {}).get("subscription_details") or {}
            sub_id = _ref_id(obj.get("subscription")) or _ref_id(parent.get("subscription"))
            succeeded = _PAYMENT_EVENTS[ev_type] is EventKind.PAYMENT_SUCCEEDED
            payment = {
                "transaction_id": _ref_id(obj.get("payment_intent")) or obj.get("id"),
                "amount": obj.get("amount_paid") if succeeded else obj.get("amount_due"),
                "currency": (obj.get("currency") or "").upper() or None,
                "customer_id": _ref_id(obj.get("customer")),
                "subscription_id": sub_id,
                "attempt_count": obj.get("attempt_count"),
                "invoice_id": obj.get("id"),
            }
            return ProviderEvent(
                event_id=ev_id, event_type=ev_type, kind=_PAYMENT_EVENTS[ev_type],
                occurred_at=occurred_at, subscription_id=sub_id, payment=payment,
            )

        if ev_type == "checkout.session.completed" and obj.get("subscription"):
            # Session carries only the id; the reconciler reads the subscription fresh
            return ProviderEvent(
                event_id=ev_id, event_type=ev_type, kind=EventKind.SUBSCRIPTION_UPDATED,
                occurred_at=occurred_at, subscription_id=_ref_id(obj.get("subscription")),
            )

        return ProviderEvent(event_id=ev_id, event_type=ev_type, kind=EventKind.IGNORED, occurred_at=occurred_at)
