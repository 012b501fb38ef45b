"""
Provider capability interface.

Every billing provider adapter implements the same operation set. An adapter
advertises what it really supports through ``capabilities``; anything outside that
set answers with a failed ``ProviderResult`` carrying ``CapabilityUnsupported``.
Adapters translate provider payloads into the normalized snapshots below, so the
reconciliation layer never looks at provider-specific JSON.
"""
from __future__ import annotations

import abc
import enum
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from subledger.services.errors import BillingError, CapabilityUnsupported, ProviderError
from subledger.utils.validators import missing_fields

logger = logging.getLogger(__name__)


class Capability(str, enum.Enum):
    CREATE_CUSTOMER = "create_customer"
    GET_CUSTOMER = "get_customer"
    UPDATE_CUSTOMER = "update_customer"
    DELETE_CUSTOMER = "delete_customer"
    ATTACH_PAYMENT_METHOD = "attach_payment_method"
    SET_DEFAULT_PAYMENT_METHOD = "set_default_payment_method"
    CREATE_SUBSCRIPTION = "create_subscription"
    GET_SUBSCRIPTION = "get_subscription"
    UPDATE_SUBSCRIPTION = "update_subscription"
    PAUSE_SUBSCRIPTION = "pause_subscription"
    RESUME_SUBSCRIPTION = "resume_subscription"
    CANCEL_SUBSCRIPTION = "cancel_subscription"
    REPORT_USAGE = "report_usage"
    CREATE_SCHEDULE = "create_schedule"
    LIST_SUBSCRIPTIONS_FOR_CUSTOMER = "list_subscriptions_for_customer"
    REFUND = "refund"
    CREATE_PAYMENT = "create_payment"
    # Feature flags that qualify an operation rather than name one
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    IN_PLACE_PLAN_CHANGE = "in_place_plan_change"


class EventKind(str, enum.Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    IGNORED = "ignored"


class _Keep:
    def __repr__(self) -> str:
        return "KEEP"


# Marks a snapshot field the provider did not report; the ledger keeps its value
KEEP: Any = _Keep()


@dataclass
class ItemSnapshot:
    external_id: str
    price_id: Optional[str] = None
    quantity: int = 1


@dataclass
class SubscriptionSnapshot:
    external_id: str
    status: Optional[str] = None
    customer_external_id: Optional[str] = None
    plan_id: Optional[str] = None
    start_date: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    cancellation_reason: Optional[str] = None
    # dict while paused, None once resumed, KEEP when not reported
    pause_collection: Any = KEEP
    items: Optional[List[ItemSnapshot]] = None
    metadata: Optional[Dict[str, Any]] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class CustomerSnapshot:
    external_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    default_payment_method: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class ProviderResult:
    """(success, provider_id, status, raw, error) plus normalized snapshots."""

    success: bool
    provider_id: Optional[str] = None
    status: Optional[str] = None
    raw: Any = None
    error: Optional[BillingError] = None
    subscription: Optional[SubscriptionSnapshot] = None
    subscriptions: List[SubscriptionSnapshot] = field(default_factory=list)
    customer: Optional[CustomerSnapshot] = None

    @classmethod
    def from_subscription(cls, snap: SubscriptionSnapshot) -> "ProviderResult":
        return cls(success=True, provider_id=snap.external_id, status=snap.status, raw=snap.raw, subscription=snap)


@dataclass
class SubscriptionRequest:
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    plan_id: Optional[str] = None
    quantity: int = 1
    metadata: Optional[Dict[str, str]] = None
    trial_period_days: Optional[int] = None
    cancel_at_period_end: bool = False
    start_time: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


@dataclass
class SubscriptionUpdate:
    price_id: Optional[str] = None
    quantity: Optional[int] = None
    metadata: Optional[Dict[str, str]] = None
    cancel_at_period_end: Optional[bool] = None
    items: Optional[List[Dict[str, Any]]] = None
    trial_end: Any = None
    proration_behavior: Optional[str] = None
    billing_cycle_anchor: Optional[str] = None


@dataclass
class UsageRequest:
    subscription_item_id: str
    quantity: int
    timestamp: Optional[datetime] = None
    action: str = "increment"
    customer_id: Optional[str] = None


@dataclass
class SchedulePhase:
    price_id: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    quantity: int = 1


@dataclass
class ScheduleRequest:
    subscription_id: str
    phases: List[SchedulePhase]
    customer_id: Optional[str] = None
    proration_behavior: Optional[str] = None
    end_behavior: str = "release"


@dataclass
class PaymentRequest:
    amount: int
    currency: str
    description: Optional[str] = None
    customer_id: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


@dataclass
class RefundRequest:
    transaction_id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ProviderEvent:
    event_id: str
    event_type: str
    kind: EventKind
    occurred_at: Optional[datetime] = None
    subscription: Optional[SubscriptionSnapshot] = None
    subscription_id: Optional[str] = None
    payment: Optional[Dict[str, Any]] = None


def wire_call(capability: Capability):
    """
    Guard an adapter operation: refuse unsupported capabilities and turn wire
    exceptions into a failed ProviderResult carrying a ProviderError.
    """
    def deco(fn):
        @functools.wraps(fn)
        def _wrap(self, *args, **kwargs):
            if not self.supports(capability):
                return self.unsupported(capability.value)
            try:
                return fn(self, *args, **kwargs)
            except BillingError as exc:
                return ProviderResult(success=False, error=exc)
            except Exception as exc:
                err = self.translate_error(exc)
                logger.warning(
                    "provider.call_failed",
                    extra={"provider": self.name, "operation": capability.value, "error": str(exc)},
                )
                return ProviderResult(success=False, error=err)
        return _wrap
    return deco


class BillingProvider(abc.ABC):
    name: str = ""
    capabilities: frozenset = frozenset()
    # Providers whose cached ledger rows go stale quickly are re-read on every lookup
    cache_goes_stale: bool = False
    # operation -> fields a caller must supply for this provider
    required_fields: Mapping[str, tuple] = {}

    def is_configured(self) -> bool:
        return True

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def unsupported(self, operation: str) -> ProviderResult:
        return ProviderResult(success=False, error=CapabilityUnsupported(self.name, operation))

    def missing_fields(self, operation: str, values: Mapping[str, Any]) -> List[str]:
        return missing_fields(values, self.required_fields.get(operation, ()))

    def translate_error(self, exc: Exception) -> ProviderError:
        return ProviderError(str(exc) or exc.__class__.__name__, provider=self.name)

    @abc.abstractmethod
    def normalize_status(self, raw_status: Optional[str]) -> Optional[str]:
        ...

    # --- customers ---
    def create_customer(self, email: str, name: Optional[str] = None, metadata=None) -> ProviderResult:
        return self.unsupported(Capability.CREATE_CUSTOMER.value)

    def get_customer(self, customer_id: str) -> ProviderResult:
        return self.unsupported(Capability.GET_CUSTOMER.value)

    def update_customer(self, customer_id: str, email=None, name=None, metadata=None) -> ProviderResult:
        return self.unsupported(Capability.UPDATE_CUSTOMER.value)

    def delete_customer(self, customer_id: str) -> ProviderResult:
        return self.unsupported(Capability.DELETE_CUSTOMER.value)

    def attach_payment_method(self, customer_id: str, payment_method_id: str) -> ProviderResult:
        return self.unsupported(Capability.ATTACH_PAYMENT_METHOD.value)

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> ProviderResult:
        return self.unsupported(Capability.SET_DEFAULT_PAYMENT_METHOD.value)

    # --- subscriptions ---
    def create_subscription(self, request: SubscriptionRequest) -> ProviderResult:
        return self.unsupported(Capability.CREATE_SUBSCRIPTION.value)

    def get_subscription(self, subscription_id: str) -> ProviderResult:
        return self.unsupported(Capability.GET_SUBSCRIPTION.value)

    def update_subscription(self, subscription_id: str, update: SubscriptionUpdate) -> ProviderResult:
        return self.unsupported(Capability.UPDATE_SUBSCRIPTION.value)

    def pause_subscription(self, subscription_id: str, resume_at: Optional[datetime] = None,
                           reason: Optional[str] = None) -> ProviderResult:
        return self.unsupported(Capability.PAUSE_SUBSCRIPTION.value)

    def resume_subscription(self, subscription_id: str, reason: Optional[str] = None) -> ProviderResult:
        return self.unsupported(Capability.RESUME_SUBSCRIPTION.value)

    def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None,
                            at_period_end: bool = False) -> ProviderResult:
        return self.unsupported(Capability.CANCEL_SUBSCRIPTION.value)

    def report_usage(self, usage: UsageRequest) -> ProviderResult:
        return self.unsupported(Capability.REPORT_USAGE.value)

    def create_schedule(self, request: ScheduleRequest) -> ProviderResult:
        return self.unsupported(Capability.CREATE_SCHEDULE.value)

    def list_subscriptions_for_customer(self, customer_id: str) -> ProviderResult:
        return self.unsupported(Capability.LIST_SUBSCRIPTIONS_FOR_CUSTOMER.value)

    # --- payments ---
    def create_payment(self, request: PaymentRequest) -> ProviderResult:
        return self.unsupported(Capability.CREATE_PAYMENT.value)

    def refund(self, request: RefundRequest) -> ProviderResult:
        return self.unsupported(Capability.REFUND.value)

    # --- webhooks ---
    @abc.abstractmethod
    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """Return the parsed event or raise ProviderAuthError."""

    @abc.abstractmethod
    def parse_event(self, event: Mapping[str, Any]) -> ProviderEvent:
        ...
