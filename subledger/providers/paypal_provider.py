"""
PayPal adapter over the REST API.

PayPal has no customer objects, no metered usage and no in-place plan change; those
operations answer with CapabilityUnsupported and the orchestrator routes around them
(cancel/recreate plan changes, locally scheduled changes, ledger-served listings).
"""
import json
import time
from typing import Any, Dict, Mapping, Optional

import httpx

from subledger.services.errors import ProviderAuthError, ProviderError
from subledger.utils.helpers import from_minor_units, jsonable, parse_datetime, to_minor_units
from .base import (
    KEEP,
    BillingProvider,
    Capability,
    EventKind,
    PaymentRequest,
    ProviderEvent,
    ProviderResult,
    RefundRequest,
    SubscriptionRequest,
    SubscriptionSnapshot,
    SubscriptionUpdate,
    wire_call,
)

BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

_STATUS_MAP = {
    "APPROVAL_PENDING": "incomplete",
    "APPROVED": "incomplete",
    "CREATED": "incomplete",
    "ACTIVE": "active",
    "SUSPENDED": "paused",
    "CANCELLED": "canceled",
    "EXPIRED": "expired",
}

_SUBSCRIPTION_EVENTS = {
    "BILLING.SUBSCRIPTION.CREATED": EventKind.SUBSCRIPTION_CREATED,
    "BILLING.SUBSCRIPTION.UPDATED": EventKind.SUBSCRIPTION_UPDATED,
    "BILLING.SUBSCRIPTION.EXPIRED": EventKind.SUBSCRIPTION_UPDATED,
    "BILLING.SUBSCRIPTION.CANCELLED": EventKind.SUBSCRIPTION_CANCELED,
    "BILLING.SUBSCRIPTION.SUSPENDED": EventKind.SUBSCRIPTION_PAUSED,
    "BILLING.SUBSCRIPTION.ACTIVATED": EventKind.SUBSCRIPTION_RESUMED,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": EventKind.SUBSCRIPTION_RESUMED,
}

_PAYMENT_EVENTS = {
    "PAYMENT.SALE.COMPLETED": EventKind.PAYMENT_SUCCEEDED,
    "PAYMENT.SALE.DENIED": EventKind.PAYMENT_FAILED,
    "PAYMENT.SALE.FAILED": EventKind.PAYMENT_FAILED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": EventKind.PAYMENT_FAILED,
}

# Token refresh margin so a token never expires mid-request
_TOKEN_SLACK_SECONDS = 60


class PayPalProvider(BillingProvider):
    name = "paypal"
    capabilities = frozenset({
        Capability.CREATE_SUBSCRIPTION,
        Capability.GET_SUBSCRIPTION,
        Capability.UPDATE_SUBSCRIPTION,
        Capability.CANCEL_SUBSCRIPTION,
        Capability.CREATE_PAYMENT,
        Capability.REFUND,
    })
    cache_goes_stale = False
    required_fields = {
        "create_subscription": ("plan_id",),
    }

    def __init__(self, client_id: Optional[str], client_secret: Optional[str], *,
                 webhook_id: Optional[str] = None, environment: str = "sandbox",
                 timeout: float = 15.0, brand_name: str = "", base_app_url: str = "",
                 transport: Optional[httpx.BaseTransport] = None):
        self._client_id = client_id
        self._client_secret = client_secret
        self._webhook_id = webhook_id
        self._brand_name = brand_name
        self._base_app_url = (base_app_url or "").rstrip("/")
        self._http = httpx.Client(
            base_url=BASE_URLS.get(environment, BASE_URLS["sandbox"]),
            timeout=timeout,
            transport=transport,
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def close(self) -> None:
        self._http.close()

    # ----- wire -----
    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not (self._client_id and self._client_secret):
            raise ProviderAuthError("PayPal credentials are not configured", provider=self.name)
        resp = self._http.post(
            "/v1/oauth2/token",
            auth=(self._client_id, self._client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        payload = self._check(resp)
        self._token = payload["access_token"]
        self._token_expires_at = time.monotonic() + max(int(payload.get("expires_in", 0)) - _TOKEN_SLACK_SECONDS, 0)
        return self._token

    def _check(self, resp: httpx.Response) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if resp.content:
            try:
                body = resp.json()
            except ValueError:
                body = {"raw": resp.text}
        if resp.is_error:
            message = body.get("message") or body.get("error_description") or f"PayPal HTTP {resp.status_code}"
            code = body.get("name") or body.get("error")
            if resp.status_code == 401:
                self._token = None
                raise ProviderAuthError(message, provider=self.name, code=code, http_status=401, details=body)
            raise ProviderError(message, provider=self.name, code=code, http_status=resp.status_code, details=body)
        return body

    def _request(self, method: str, path: str, *, json_body: Any = None,
                 request_id: Optional[str] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        resp = self._http.request(method, path, json=json_body, headers=headers)
        return self._check(resp)

    def translate_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, httpx.TimeoutException):
            return ProviderError("PayPal request timed out", provider=self.name, code="timeout")
        if isinstance(exc, httpx.HTTPError):
            return ProviderError(f"PayPal transport error: {exc}", provider=self.name, code="transport")
        return super().translate_error(exc)

    def normalize_status(self, raw_status: Optional[str]) -> Optional[str]:
        if raw_status is None:
            return None
        return _STATUS_MAP.get(raw_status.upper(), raw_status.lower())

    def _url(self, path: str) -> str:
        return f"{self._base_app_url}/{path.lstrip('/')}"

    # ----- snapshots -----
    def subscription_snapshot(self, sub: Mapping[str, Any]) -> SubscriptionSnapshot:
        raw_status = (sub.get("status") or "").upper() or None
        billing = sub.get("billing_info") or {}
        last_payment = billing.get("last_payment") or {}
        subscriber = sub.get("subscriber") or {}

        pause: Any = KEEP
        if raw_status == "SUSPENDED":
            pause = {"reason": sub.get("status_change_note")}
        elif raw_status == "ACTIVE":
            pause = None

        return SubscriptionSnapshot(
            external_id=sub.get("id"),
            status=self.normalize_status(raw_status),
            customer_external_id=sub.get("custom_id") or subscriber.get("payer_id"),
            plan_id=sub.get("plan_id"),
            start_date=parse_datetime(sub.get("start_time")),
            current_period_start=parse_datetime(last_payment.get("time")),
            current_period_end=parse_datetime(billing.get("next_billing_time")),
            cancellation_reason=sub.get("status_change_note") if raw_status == "CANCELLED" else None,
            pause_collection=pause,
            raw=jsonable(dict(sub)),
        )

    def _fetch_or_minimal(self, subscription_id: str, status: Optional[str]) -> ProviderResult:
        # Action endpoints answer 204; read the subscription back for the full state
        try:
            return ProviderResult.from_subscription(self.subscription_snapshot(
                self._request("GET", f"/v1/billing/subscriptions/{subscription_id}")
            ))
        except (ProviderError, httpx.HTTPError):
            snap = SubscriptionSnapshot(external_id=subscription_id, status=status)
            return ProviderResult.from_subscription(snap)

    # ----- subscriptions -----
    @wire_call(Capability.CREATE_SUBSCRIPTION)
    def create_subscription(self, request: SubscriptionRequest):
        body: Dict[str, Any] = {
            "plan_id": request.plan_id or request.price_id,
            "quantity": str(request.quantity or 1),
            "application_context": {
                "brand_name": self._brand_name,
                "user_action": "SUBSCRIBE_NOW",
                "return_url": request.return_url or self._url("subscriptions/approved"),
                "cancel_url": request.cancel_url or self._url("subscriptions/cancelled"),
            },
        }
        if request.customer_id:
            body["custom_id"] = request.customer_id
        if request.start_time:
            body["start_time"] = request.start_time.strftime("%Y-%m-%dT%H:%M:%SZ")
        sub = self._request("POST", "/v1/billing/subscriptions", json_body=body, request_id=request.idempotency_key)
        result = ProviderResult.from_subscription(self.subscription_snapshot(sub))
        approve = next((l.get("href") for l in sub.get("links") or [] if l.get("rel") == "approve"), None)
        if approve:
            result.raw = dict(result.raw or {}, approval_url=approve)
        return result

    @wire_call(Capability.GET_SUBSCRIPTION)
    def get_subscription(self, subscription_id):
        sub = self._request("GET", f"/v1/billing/subscriptions/{subscription_id}")
        return ProviderResult.from_subscription(self.subscription_snapshot(sub))

    @wire_call(Capability.UPDATE_SUBSCRIPTION)
    def update_subscription(self, subscription_id, update: SubscriptionUpdate):
        if update.price_id or update.items:
            return self.unsupported(Capability.IN_PLACE_PLAN_CHANGE.value)
        if update.cancel_at_period_end:
            return self.unsupported(Capability.CANCEL_AT_PERIOD_END.value)
        if update.quantity is None:
            return self._fetch_or_minimal(subscription_id, None)
        self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/revise",
            json_body={"quantity": str(update.quantity)},
        )
        return self._fetch_or_minimal(subscription_id, None)

    @wire_call(Capability.CANCEL_SUBSCRIPTION)
    def cancel_subscription(self, subscription_id, reason=None, at_period_end=False):
        if at_period_end:
            return self.unsupported(Capability.CANCEL_AT_PERIOD_END.value)
        self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            json_body={"reason": reason or "Cancelled by customer"},
        )
        return self._fetch_or_minimal(subscription_id, "canceled")

    # ----- payments -----
    @wire_call(Capability.CREATE_PAYMENT)
    def create_payment(self, request: PaymentRequest):
        unit: Dict[str, Any] = {
            "amount": {"currency_code": request.currency.upper(), "value": from_minor_units(request.amount)},
        }
        if request.description:
            unit["description"] = request.description
        if request.customer_id:
            unit["custom_id"] = request.customer_id
        body = {
            "intent": "CAPTURE",
            "purchase_units": [unit],
            "application_context": {
                "brand_name": self._brand_name,
                "return_url": request.return_url or self._url("payments/success"),
                "cancel_url": request.cancel_url or self._url("payments/cancel"),
            },
        }
        order = self._request("POST", "/v2/checkout/orders", json_body=body)
        return ProviderResult(success=True, provider_id=order.get("id"), status=(order.get("status") or "").lower(), raw=order)

    @wire_call(Capability.REFUND)
    def refund(self, request: RefundRequest):
        body: Dict[str, Any] = {}
        if request.amount is not None:
            body["amount"] = {
                "value": from_minor_units(request.amount),
                "currency_code": (request.currency or "USD").upper(),
            }
        if request.reason:
            body["note_to_payer"] = request.reason
        refund = self._request("POST", f"/v2/payments/captures/{request.transaction_id}/refund", json_body=body)
        return ProviderResult(success=True, provider_id=refund.get("id"), status=(refund.get("status") or "").lower(), raw=refund)

    # ----- webhooks -----
    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        if not self._webhook_id:
            raise ProviderError("PayPal webhook id not configured", provider=self.name)
        try:
            event = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ProviderAuthError("malformed_event", provider=self.name) from exc

        body = {
            "auth_algo": headers.get("PAYPAL-AUTH-ALGO"),
            "cert_url": headers.get("PAYPAL-CERT-URL"),
            "transmission_id": headers.get("PAYPAL-TRANSMISSION-ID"),
            "transmission_sig": headers.get("PAYPAL-TRANSMISSION-SIG"),
            "transmission_time": headers.get("PAYPAL-TRANSMISSION-TIME"),
            "webhook_id": self._webhook_id,
            "webhook_event": event,
        }
        try:
            result = self._request("POST", "/v1/notifications/verify-webhook-signature", json_body=body)
        except httpx.HTTPError as exc:
            raise self.translate_error(exc) from exc
        if (result.get("verification_status") or "").upper() != "SUCCESS":
            raise ProviderAuthError("invalid_signature", provider=self.name)
        return event

    def parse_event(self, event: Mapping[str, Any]) -> ProviderEvent:
        ev_id = event.get("id")
        ev_type = event.get("event_type") or ""
        resource = event.get("resource") or {}
        occurred_at = parse_datetime(event.get("create_time"))

        if ev_type in _SUBSCRIPTION_EVENTS:
            snap = self.subscription_snapshot(resource)
            return ProviderEvent(
                event_id=ev_id, event_type=ev_type, kind=_SUBSCRIPTION_EVENTS[ev_type],
                occurred_at=occurred_at, subscription=snap, subscription_id=snap.external_id,
            )

        if ev_type in _PAYMENT_EVENTS:
            amount = resource.get("amount") or {}
            if ev_type.startswith("BILLING."):
                sub_id = resource.get("id")
                value = (resource.get("billing_info") or {}).get("outstanding_balance") or {}
                amount = {"total": value.get("value"), "currency": value.get("currency_code")}
            else:
                sub_id = resource.get("billing_agreement_id")
            total = amount.get("total") or amount.get("value")
            payment = {
                "transaction_id": resource.get("id"),
                "amount": to_minor_units(total) if total else None,
                "currency": amount.get("currency") or amount.get("currency_code"),
                "customer_id": resource.get("custom_id") or resource.get("custom"),
                "subscription_id": sub_id,
                "attempt_count": None,
            }
            return ProviderEvent(
                event_id=ev_id, event_type=ev_type, kind=_PAYMENT_EVENTS[ev_type],
                occurred_at=occurred_at, subscription_id=sub_id, payment=payment,
            )

        return ProviderEvent(event_id=ev_id, event_type=ev_type, kind=EventKind.IGNORED, occurred_at=occurred_at)
