"""
Reconciliation service: the single entry point that keeps the ledger and the
billing providers consistent.

Policy, applied the same way by every operation:

* writes call the provider first; a provider failure aborts with no local writes;
* the ledger write that follows is best-effort: on failure it is rolled back, logged,
  and the otherwise successful result carries ``ledger_synced=False``;
* reads fall back to the ledger when the provider is unavailable and flag the
  result stale; with neither source the answer is ``NotFound``.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from subledger.models import USAGE_ACTIONS, Subscription, TERMINAL_STATUSES
from subledger.providers.base import (
    BillingProvider,
    Capability,
    EventKind,
    KEEP,
    PaymentRequest,
    ProviderResult,
    RefundRequest,
    SubscriptionRequest,
    SubscriptionSnapshot,
    SubscriptionUpdate,
    UsageRequest,
)
from subledger.services.errors import (
    LedgerWriteError,
    NotFound,
    OperationResult,
    ProviderError,
    ValidationError,
)
from subledger.services.event_log import EventLog
from subledger.services.ledger import LedgerStore
from subledger.utils.helpers import as_utc, utcnow
from subledger.utils.validators import clean_str, is_valid_currency, is_valid_email, parse_when, positive_int

logger = logging.getLogger(__name__)

_KIND_EVENT_TYPES = {
    EventKind.SUBSCRIPTION_CANCELED: "cancelled",
    EventKind.SUBSCRIPTION_PAUSED: "paused",
    EventKind.SUBSCRIPTION_RESUMED: "resumed",
}


class ReconciliationService:
    def __init__(self, ledger: LedgerStore, events: EventLog, providers, *,
                 max_age_seconds: Optional[int] = None):
        self.ledger = ledger
        self.events = events
        self.providers = providers
        self.max_age = timedelta(seconds=max_age_seconds) if max_age_seconds else None

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------
    def resolve(self, provider_name: Optional[str]) -> Tuple[Optional[BillingProvider], Optional[OperationResult]]:
        provider = self.providers.get(provider_name)
        if provider is None:
            err = ValidationError(f"Unknown provider: {provider_name!r}", field_name="provider")
            return None, OperationResult.fail(err, provider=provider_name)
        return provider, None

    def provider_failure(self, operation: str, adapter: BillingProvider, res: ProviderResult, **data) -> OperationResult:
        """Failed result for a provider call; ``data`` carries the ids to echo back."""
        error = res.error or ProviderError("provider returned no result", provider=adapter.name)
        logger.warning(
            "reconcile.provider_failed",
            extra={"operation": operation, "provider": adapter.name, "error_kind": error.kind.value, "error": error.message},
        )
        data["provider"] = adapter.name
        return OperationResult.fail(error, **data)

    def validation_failure(self, message: str, field_name: str, **data) -> OperationResult:
        return OperationResult.fail(ValidationError(message, field_name=field_name), **data)

    def guarded_write(self, result: OperationResult, operation: str, fn: Callable[[], Any]) -> Any:
        """Run a ledger write as one unit; failures degrade ``result`` instead of failing it."""
        try:
            value = fn()
            self.ledger.commit()
            return value
        except SQLAlchemyError as exc:
            self.ledger.rollback()
            err = LedgerWriteError(f"Ledger write failed during {operation}", details={"error": str(exc)})
            logger.exception("reconcile.ledger_write_failed", extra={"operation": operation})
            result.mark_ledger_failed()
            result.data.setdefault("ledger_error", err.message)
            return None

    def _too_old(self, sub: Subscription) -> bool:
        if self.max_age is None:
            return False
        stamp = as_utc(sub.updated_at) or as_utc(sub.created_at)
        return stamp is None or utcnow() - stamp > self.max_age

    def _store_snapshot(self, provider: BillingProvider, snap: SubscriptionSnapshot, *,
                        synced_at: Optional[datetime] = None, **overrides):
        # synced_at only ever holds provider event time; local writes leave it alone
        existing = self.ledger.find_subscription(snap.external_id, provider.name)
        prev_status = existing.status if existing else None
        customer = self.ledger.ensure_customer(provider.name, snap.customer_external_id)
        sub, created = self.ledger.upsert_subscription(
            provider.name, snap, customer=customer, synced_at=synced_at, **overrides
        )
        return sub, created, prev_status

    def record_change(self, provider: BillingProvider, snap: SubscriptionSnapshot, event_type: str,
                       data: Optional[Dict[str, Any]] = None, **overrides) -> Subscription:
        sub, created, prev = self._store_snapshot(provider, snap, **overrides)
        if created and event_type == "updated":
            event_type = "created"
        self.events.append(sub, event_type, status_from=prev, status_to=sub.status, data=data)
        return sub

    @staticmethod
    def _snapshot_view(provider: BillingProvider, snap: SubscriptionSnapshot) -> Dict[str, Any]:
        """Result shape for provider data that never reached the ledger."""
        return {
            "id": snap.external_id,
            "provider": provider.name,
            "customer_id": snap.customer_external_id,
            "plan_id": snap.plan_id,
            "status": snap.status,
            "current_period_end": snap.current_period_end.isoformat() if snap.current_period_end else None,
            "cancel_at_period_end": bool(snap.cancel_at_period_end),
            "pause_collection": None if snap.pause_collection is KEEP else snap.pause_collection,
            "metadata": snap.metadata or {},
            "items": [{"id": i.external_id, "price_id": i.price_id, "quantity": i.quantity} for i in snap.items or []],
        }

    def subscription_result(self, message: str, provider: BillingProvider, snap: SubscriptionSnapshot,
                             sub: Optional[Subscription], result: OperationResult) -> OperationResult:
        result.message = message
        result.data["subscription"] = sub.to_dict() if sub is not None else self._snapshot_view(provider, snap)
        result.data["status"] = sub.status if sub is not None else snap.status
        return result

    # ------------------------------------------------------------------
    # read path
    # ------------------------------------------------------------------
    def get_subscription(self, provider_name: str, external_id: str, *, force_refresh: bool = False,
                         best_effort: bool = False) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        if not clean_str(external_id):
            return self.validation_failure("subscription id is required", "subscription_id", provider=provider.name)

        local, local_error = None, None
        try:
            local = self.ledger.find_subscription(external_id, provider.name)
        except SQLAlchemyError as exc:
            self.ledger.rollback()
            local_error = exc
            logger.exception("reconcile.ledger_read_failed", extra={"subscription_id": external_id})

        must_query = (
            force_refresh
            or local is None
            or provider.cache_goes_stale
            or self._too_old(local)
        )
        if not must_query:
            return OperationResult.ok(
                "Subscription retrieved", subscription_id=external_id, provider=provider.name,
                source="ledger", status=local.status, subscription=local.to_dict(),
            )

        res = provider.get_subscription(external_id)
        if res.success and res.subscription is not None:
            result = OperationResult.ok(subscription_id=external_id, provider=provider.name, source="provider")
            sub = None
            if local_error is None:
                sub = self.guarded_write(result, "get_subscription", lambda: self._apply_read(provider, res.subscription))
            else:
                result.mark_ledger_failed()
            return self.subscription_result("Subscription retrieved", provider, res.subscription, sub, result)

        if local is not None:
            logger.warning(
                "reconcile.serving_stale",
                extra={"provider": provider.name, "subscription_id": external_id,
                       "error": res.error.message if res.error else None},
            )
            return OperationResult.ok(
                "Subscription retrieved from ledger; provider unavailable",
                subscription_id=external_id, provider=provider.name, source="ledger",
                status=local.status, subscription=local.to_dict(),
                provider_error=res.error.message if res.error else None,
            ).mark_stale()

        if local_error is not None:
            if best_effort:
                # Display-only fallback; never produced for canonical reads
                logger.error("reconcile.placeholder_served", extra={"subscription_id": external_id})
                return OperationResult.ok(
                    "Subscription state unavailable", subscription_id=external_id, provider=provider.name,
                    placeholder=True, status="unknown",
                    subscription={"id": external_id, "status": "unknown"},
                ).mark_stale()
            return self.provider_failure("get_subscription", provider, res, subscription_id=external_id)

        return OperationResult.fail(
            NotFound(f"Subscription {external_id} not found"),
            subscription_id=external_id, provider=provider.name,
        )

    def _apply_read(self, provider: BillingProvider, snap: SubscriptionSnapshot) -> Subscription:
        sub, created, prev = self._store_snapshot(provider, snap)
        if created:
            self.events.append(sub, "created", status_from=None, status_to=sub.status, data={"source": "provider_read"})
        elif prev != sub.status:
            self.events.append(sub, "updated", status_from=prev, status_to=sub.status, data={"source": "provider_read"})
        self._settle_pending_change(sub, "provider_read")
        return sub

    def _settle_pending_change(self, sub: Subscription, source: str) -> bool:
        """Clear ``pending_update`` once the provider reports the scheduled plan as current."""
        pending = sub.pending_update or {}
        target = pending.get("to_price_id")
        if not target or sub.plan_id != target:
            return False
        self.ledger.complete_scheduled_change(pending.get("scheduled_change_id"))
        self.ledger.set_fields(sub, pending_update=None)
        self.events.append(sub, "plan_changed", status_from=sub.status, status_to=sub.status, data={
            "to_plan": pending.get("to_plan"),
            "price_id": target,
            "scheduled_at": pending.get("scheduled_at"),
            "schedule_id": pending.get("schedule_id"),
            "source": source,
        })
        logger.info("reconcile.scheduled_change_applied", extra={"subscription_id": sub.external_id, "to_plan": pending.get("to_plan")})
        return True

    def subscription_events(self, provider_name: str, external_id: str, limit: Optional[int] = None) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        sub = self.ledger.find_subscription(external_id, provider.name)
        if sub is None:
            return OperationResult.fail(NotFound(f"Subscription {external_id} not found"),
                                        subscription_id=external_id, provider=provider.name)
        events = self.events.history(sub, limit=limit)
        return OperationResult.ok(
            "Subscription events retrieved", subscription_id=external_id, provider=provider.name,
            events=[e.to_dict() for e in events],
        )

    # ------------------------------------------------------------------
    # write path
    # ------------------------------------------------------------------
    def create_subscription(self, provider_name: str, *, customer_id: Optional[str] = None,
                            price_id: Optional[str] = None, plan_id: Optional[str] = None,
                            quantity: Any = 1, metadata: Optional[Dict[str, str]] = None,
                            trial_period_days: Optional[int] = None, idempotency_key: Optional[str] = None,
                            return_url: Optional[str] = None, cancel_url: Optional[str] = None,
                            event_data: Optional[Dict[str, Any]] = None) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"customer_id": customer_id, "provider": provider.name}

        values = {"customer_id": customer_id, "price_id": price_id, "plan_id": plan_id}
        missing = provider.missing_fields("create_subscription", values)
        if missing:
            return self.validation_failure(f"{missing[0]} is required for {provider.name} subscriptions", missing[0], **ids)
        qty = positive_int(quantity)
        if qty is None:
            return self.validation_failure("quantity must be a positive integer", "quantity", **ids)
        if trial_period_days is not None and positive_int(trial_period_days) is None:
            return self.validation_failure("trial_period_days must be a positive integer", "trial_period_days", **ids)

        res = provider.create_subscription(SubscriptionRequest(
            customer_id=customer_id, price_id=price_id, plan_id=plan_id, quantity=qty,
            metadata=metadata, trial_period_days=trial_period_days, idempotency_key=idempotency_key,
            return_url=return_url, cancel_url=cancel_url,
        ))
        if not res.success or res.subscription is None:
            return self.provider_failure("create_subscription", provider, res, **ids)

        snap = res.subscription
        if not snap.customer_external_id:
            snap.customer_external_id = customer_id
        if snap.plan_id is None:
            snap.plan_id = price_id or plan_id
        if snap.metadata is None and metadata:
            snap.metadata = dict(metadata)

        result = OperationResult.ok(subscription_id=snap.external_id, **ids)
        approval_url = (res.raw or {}).get("approval_url") if isinstance(res.raw, dict) else None
        if approval_url:
            result.data["approval_url"] = approval_url

        data = {"plan_id": snap.plan_id, "quantity": qty}
        if event_data:
            data.update(event_data)
        sub = self.guarded_write(result, "create_subscription", lambda: self.record_change(provider, snap, "updated", data))
        logger.info("reconcile.subscription_created", extra={"provider": provider.name, "subscription_id": snap.external_id})
        return self.subscription_result("Subscription created", provider, snap, sub, result)

    def update_subscription(self, provider_name: str, external_id: str, *, price_id: Optional[str] = None,
                            quantity: Any = None, metadata: Optional[Dict[str, str]] = None,
                            cancel_at_period_end: Optional[bool] = None, trial_end: Any = None,
                            proration_behavior: Optional[str] = None) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"subscription_id": external_id, "provider": provider.name}
        if not clean_str(external_id):
            return self.validation_failure("subscription id is required", "subscription_id", **ids)
        if all(v is None for v in (price_id, quantity, metadata, cancel_at_period_end, trial_end)):
            return self.validation_failure("nothing to update", "body", **ids)
        qty = None
        if quantity is not None:
            qty = positive_int(quantity)
            if qty is None:
                return self.validation_failure("quantity must be a positive integer", "quantity", **ids)

        update = SubscriptionUpdate(
            price_id=price_id, quantity=qty, metadata=metadata, cancel_at_period_end=cancel_at_period_end,
            trial_end=trial_end, proration_behavior=proration_behavior,
        )
        res = provider.update_subscription(external_id, update)
        if not res.success or res.subscription is None:
            return self.provider_failure("update_subscription", provider, res, **ids)

        changes = {k: v for k, v in (("price_id", price_id), ("quantity", qty), ("metadata", metadata),
                                     ("cancel_at_period_end", cancel_at_period_end)) if v is not None}
        result = OperationResult.ok(**ids)
        sub = self.guarded_write(result, "update_subscription",
                          lambda: self.record_change(provider, res.subscription, "updated", {"changes": changes}))
        return self.subscription_result("Subscription updated", provider, res.subscription, sub, result)

    def pause_subscription(self, provider_name: str, external_id: str, *, resume_at: Any = None,
                           reason: Optional[str] = None) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"subscription_id": external_id, "provider": provider.name}
        if not clean_str(external_id):
            return self.validation_failure("subscription id is required", "subscription_id", **ids)
        if resume_at is not None:
            resume_at = parse_when(resume_at)
            if resume_at is None:
                return self.validation_failure("resume_at must be an ISO-8601 time or unix timestamp", "resume_at", **ids)
            if resume_at <= utcnow():
                return self.validation_failure("resume_at must be in the future", "resume_at", **ids)

        res = provider.pause_subscription(external_id, resume_at=resume_at, reason=reason)
        if not res.success or res.subscription is None:
            return self.provider_failure("pause_subscription", provider, res, **ids)

        snap = res.subscription
        pause = dict(snap.pause_collection or {}) if snap.pause_collection is not KEEP else {}
        pause["reason"] = reason
        if resume_at is not None and not pause.get("resumes_at"):
            pause["resumes_at"] = as_utc(resume_at).isoformat()
        snap.pause_collection = pause

        result = OperationResult.ok(**ids)
        data = {"reason": reason, "resumes_at": pause.get("resumes_at")}
        sub = self.guarded_write(result, "pause_subscription", lambda: self.record_change(provider, snap, "paused", data))
        return self.subscription_result("Subscription paused", provider, snap, sub, result)

    def resume_subscription(self, provider_name: str, external_id: str, *,
                            reason: Optional[str] = None) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"subscription_id": external_id, "provider": provider.name}
        if not clean_str(external_id):
            return self.validation_failure("subscription id is required", "subscription_id", **ids)

        res = provider.resume_subscription(external_id, reason=reason)
        if not res.success or res.subscription is None:
            return self.provider_failure("resume_subscription", provider, res, **ids)

        snap = res.subscription
        snap.pause_collection = None
        result = OperationResult.ok(**ids)
        sub = self.guarded_write(result, "resume_subscription",
                          lambda: self.record_change(provider, snap, "resumed", {"reason": reason}))
        return self.subscription_result("Subscription resumed", provider, snap, sub, result)

    def cancel_subscription(self, provider_name: str, external_id: str, *, cancel_immediately: bool = True,
                            reason: Optional[str] = None) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"subscription_id": external_id, "provider": provider.name}
        if not clean_str(external_id):
            return self.validation_failure("subscription id is required", "subscription_id", **ids)

        res = provider.cancel_subscription(external_id, reason=reason, at_period_end=not cancel_immediately)
        if not res.success or res.subscription is None:
            return self.provider_failure("cancel_subscription", provider, res, **ids)

        snap = res.subscription
        overrides: Dict[str, Any] = {}
        if reason:
            overrides["cancellation_reason"] = reason
        if not cancel_immediately:
            # Status stays as reported; the period-end transition arrives by webhook or read
            overrides["cancel_at_period_end"] = True

        result = OperationResult.ok(cancel_immediately=cancel_immediately, **ids)
        data = {"reason": reason, "cancel_immediately": cancel_immediately}
        sub = self.guarded_write(result, "cancel_subscription",
                          lambda: self.record_change(provider, snap, "cancelled", data, **overrides))
        message = "Subscription cancelled" if cancel_immediately else "Subscription will cancel at period end"
        return self.subscription_result(message, provider, snap, sub, result)

    def report_usage(self, provider_name: str, subscription_item_id: str, quantity: Any, *,
                     timestamp: Any = None, action: str = "increment",
                     metadata: Optional[Dict[str, Any]] = None) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"subscription_item_id": subscription_item_id, "provider": provider.name}
        missing = provider.missing_fields("report_usage", {"subscription_item_id": subscription_item_id, "quantity": quantity})
        if missing:
            return self.validation_failure(f"{missing[0]} is required", missing[0], **ids)
        qty = positive_int(quantity, allow_zero=(action == "set"))
        if qty is None:
            return self.validation_failure("quantity must be a positive integer", "quantity", **ids)
        if action not in USAGE_ACTIONS:
            return self.validation_failure(f"action must be one of {', '.join(USAGE_ACTIONS)}", "action", **ids)

        item = self.ledger.find_item(subscription_item_id, provider.name)
        customer_id = None
        if item is not None and item.subscription.customer is not None:
            customer_id = item.subscription.customer.external_id

        res = provider.report_usage(UsageRequest(
            subscription_item_id=subscription_item_id, quantity=qty, timestamp=timestamp,
            action=action, customer_id=customer_id,
        ))
        if not res.success:
            return self.provider_failure("report_usage", provider, res, **ids)

        result = OperationResult.ok("Usage reported", usage_record_id=res.provider_id, quantity=qty, **ids)
        if item is None:
            # Provider accepted it; the ledger has no item row to hang the record on
            logger.warning("reconcile.usage_item_unknown", extra=ids)
            result.mark_ledger_failed()
            result.data["ledger_error"] = f"Subscription item {subscription_item_id} is not in the ledger"
            return result

        def write():
            self.ledger.record_usage(item, qty, action, timestamp=timestamp, metadata=metadata)
            sub = item.subscription
            self.events.append(sub, "updated", status_from=sub.status, status_to=sub.status,
                               data={"usage": {"item_id": subscription_item_id, "quantity": qty, "action": action}})
            return sub

        sub = self.guarded_write(result, "report_usage", write)
        if sub is not None:
            result.data["subscription_id"] = sub.external_id
        return result

    # ------------------------------------------------------------------
    # customers
    # ------------------------------------------------------------------
    def create_customer(self, provider_name: str, email: Optional[str], name: Optional[str] = None,
                        metadata: Optional[Dict[str, str]] = None) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        email = clean_str(email)
        if not is_valid_email(email):
            return self.validation_failure("a valid email is required", "email", provider=provider.name)

        res = provider.create_customer(email, name=clean_str(name), metadata=metadata)
        if not res.success or res.customer is None:
            return self.provider_failure("create_customer", provider, res, email=email)

        result = OperationResult.ok("Customer created", customer_id=res.customer.external_id, provider=provider.name)
        cust = self.guarded_write(result, "create_customer", lambda: self.ledger.upsert_customer(provider.name, res.customer))
        result.data["customer"] = cust.to_dict() if cust is not None else {
            "external_id": res.customer.external_id, "email": res.customer.email, "name": res.customer.name,
        }
        return result

    def get_customer(self, provider_name: str, customer_id: str) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"customer_id": customer_id, "provider": provider.name}
        local = self.ledger.find_customer(customer_id, provider.name)

        if not provider.supports(Capability.GET_CUSTOMER):
            if local is None:
                return OperationResult.fail(NotFound(f"Customer {customer_id} not found"), **ids)
            return OperationResult.ok("Customer retrieved", source="ledger", customer=local.to_dict(), **ids)

        res = provider.get_customer(customer_id)
        if res.success and res.customer is not None:
            result = OperationResult.ok("Customer retrieved", source="provider", **ids)
            # Back-fills placeholder rows created from subscription payloads
            cust = self.guarded_write(result, "get_customer", lambda: self.ledger.upsert_customer(provider.name, res.customer))
            result.data["customer"] = cust.to_dict() if cust is not None else {"external_id": customer_id}
            return result
        if local is not None:
            return OperationResult.ok("Customer retrieved from ledger; provider unavailable", source="ledger",
                                      customer=local.to_dict(), **ids).mark_stale()
        return OperationResult.fail(NotFound(f"Customer {customer_id} not found"), **ids)

    def update_customer(self, provider_name: str, customer_id: str, *, email: Optional[str] = None,
                        name: Optional[str] = None, metadata: Optional[Dict[str, str]] = None) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"customer_id": customer_id, "provider": provider.name}
        email = clean_str(email)
        if email is not None and not is_valid_email(email):
            return self.validation_failure("email is not valid", "email", **ids)
        if email is None and name is None and metadata is None:
            return self.validation_failure("nothing to update", "body", **ids)

        res = provider.update_customer(customer_id, email=email, name=clean_str(name), metadata=metadata)
        if not res.success or res.customer is None:
            return self.provider_failure("update_customer", provider, res, **ids)
        result = OperationResult.ok("Customer updated", **ids)
        cust = self.guarded_write(result, "update_customer", lambda: self.ledger.upsert_customer(provider.name, res.customer))
        result.data["customer"] = cust.to_dict() if cust is not None else {"external_id": customer_id}
        return result

    def delete_customer(self, provider_name: str, customer_id: str, *, best_effort: bool = False) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"customer_id": customer_id, "provider": provider.name}

        res = provider.delete_customer(customer_id)
        if not res.success and not best_effort:
            return self.provider_failure("delete_customer", provider, res, **ids)

        result = OperationResult.ok("Customer deleted", provider_deleted=res.success, **ids)
        if not res.success:
            logger.warning("reconcile.customer_delete_local_only", extra=ids)
            result.message = "Customer removed from ledger; provider deletion failed"
            result.data["provider_error"] = res.error.message if res.error else None
        removed = self.guarded_write(result, "delete_customer", lambda: self.ledger.delete_customer(provider.name, customer_id))
        result.data["ledger_deleted"] = bool(removed)
        return result

    def attach_payment_method(self, provider_name: str, customer_id: str, payment_method_id: str, *,
                              set_default: bool = False) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"customer_id": customer_id, "payment_method_id": payment_method_id, "provider": provider.name}
        if not clean_str(payment_method_id):
            return self.validation_failure("payment_method_id is required", "payment_method_id", **ids)

        res = provider.attach_payment_method(customer_id, payment_method_id)
        if not res.success:
            return self.provider_failure("attach_payment_method", provider, res, **ids)
        if set_default:
            return self.set_default_payment_method(provider.name, customer_id, payment_method_id)
        return OperationResult.ok("Payment method attached", **ids)

    def set_default_payment_method(self, provider_name: str, customer_id: str,
                                   payment_method_id: str) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"customer_id": customer_id, "payment_method_id": payment_method_id, "provider": provider.name}
        if not clean_str(payment_method_id):
            return self.validation_failure("payment_method_id is required", "payment_method_id", **ids)

        res = provider.set_default_payment_method(customer_id, payment_method_id)
        if not res.success:
            return self.provider_failure("set_default_payment_method", provider, res, **ids)

        def write():
            cust = self.ledger.ensure_customer(provider.name, customer_id)
            return self.ledger.update_customer_fields(cust, default_payment_method=payment_method_id)

        result = OperationResult.ok("Default payment method set", **ids)
        self.guarded_write(result, "set_default_payment_method", write)
        return result

    def list_customer_subscriptions(self, provider_name: str, customer_id: str) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"customer_id": customer_id, "provider": provider.name}

        if provider.supports(Capability.LIST_SUBSCRIPTIONS_FOR_CUSTOMER):
            res = provider.list_subscriptions_for_customer(customer_id)
            if res.success:
                result = OperationResult.ok("Subscriptions retrieved", source="provider", **ids)
                stored = self.guarded_write(result, "list_customer_subscriptions",
                                     lambda: [self._apply_read(provider, s) for s in res.subscriptions])
                if stored is not None:
                    result.data["subscriptions"] = [s.to_dict() for s in stored]
                else:
                    result.data["subscriptions"] = [self._snapshot_view(provider, s) for s in res.subscriptions]
                return result
            local = self.ledger.subscriptions_for_customer(provider.name, customer_id)
            return OperationResult.ok("Subscriptions retrieved from ledger; provider unavailable", source="ledger",
                                      subscriptions=[s.to_dict() for s in local], **ids).mark_stale()

        local = self.ledger.subscriptions_for_customer(provider.name, customer_id)
        return OperationResult.ok("Subscriptions retrieved", source="ledger",
                                  subscriptions=[s.to_dict() for s in local], **ids)

    # ------------------------------------------------------------------
    # payments
    # ------------------------------------------------------------------
    def create_payment(self, provider_name: str, *, amount: Any, currency: Optional[str],
                       description: Optional[str] = None, customer_id: Optional[str] = None,
                       metadata: Optional[Dict[str, str]] = None, return_url: Optional[str] = None,
                       cancel_url: Optional[str] = None) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"customer_id": customer_id, "provider": provider.name}
        minor = positive_int(amount)
        if minor is None:
            return self.validation_failure("amount must be a positive integer in minor units", "amount", **ids)
        if not is_valid_currency(currency):
            return self.validation_failure("currency must be a 3-letter code", "currency", **ids)

        res = provider.create_payment(PaymentRequest(
            amount=minor, currency=currency.upper(), description=clean_str(description),
            customer_id=customer_id, metadata=metadata, return_url=return_url, cancel_url=cancel_url,
        ))
        if not res.success:
            return self.provider_failure("create_payment", provider, res, **ids)

        result = OperationResult.ok("Payment created", transaction_id=res.provider_id, status=res.status, **ids)
        raw = res.raw if isinstance(res.raw, dict) else {}
        if raw.get("client_secret"):
            result.data["client_secret"] = raw["client_secret"]
        approve = next((l.get("href") for l in raw.get("links") or [] if l.get("rel") in ("approve", "payer-action")), None)
        if approve:
            result.data["approval_url"] = approve

        def write():
            return self.ledger.record_payment(
                provider.name, transaction_id=res.provider_id, status=res.status or "pending",
                amount=minor, currency=currency, customer=self.ledger.find_customer(customer_id, provider.name),
                description=clean_str(description), metadata=metadata,
            )

        payment = self.guarded_write(result, "create_payment", write)
        if payment is not None:
            result.data["payment_id"] = payment.id
        return result

    def refund_payment(self, provider_name: str, transaction_id: str, *, amount: Any = None,
                       currency: Optional[str] = None, reason: Optional[str] = None) -> OperationResult:
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"transaction_id": transaction_id, "provider": provider.name}
        if not clean_str(transaction_id):
            return self.validation_failure("transaction_id is required", "transaction_id", **ids)
        minor = None
        if amount is not None:
            minor = positive_int(amount)
            if minor is None:
                return self.validation_failure("amount must be a positive integer in minor units", "amount", **ids)

        payment = self.ledger.find_payment(transaction_id, provider.name)
        res = provider.refund(RefundRequest(
            transaction_id=transaction_id, amount=minor,
            currency=currency or (payment.currency if payment else None), reason=clean_str(reason),
        ))
        if not res.success:
            return self.provider_failure("refund_payment", provider, res, **ids)

        result = OperationResult.ok("Refund created", refund_id=res.provider_id, status=res.status, **ids)
        self.guarded_write(result, "refund_payment", lambda: self.ledger.record_refund(
            provider.name, refund_id=res.provider_id, transaction_id=transaction_id,
            status=res.status or "pending", amount=minor, reason=clean_str(reason),
        ))
        return result

    # ------------------------------------------------------------------
    # provider-pushed state (webhooks)
    # ------------------------------------------------------------------
    def apply_provider_state(self, provider_name: str, snapshot: SubscriptionSnapshot, *,
                             occurred_at: Optional[datetime] = None,
                             kind: EventKind = EventKind.SUBSCRIPTION_UPDATED,
                             source: Optional[str] = None) -> OperationResult:
        """
        Sync a snapshot the provider pushed. Snapshots older than the last applied
        provider state are acknowledged and skipped.
        """
        provider, err = self.resolve(provider_name)
        if err:
            return err
        ids = {"subscription_id": snapshot.external_id, "provider": provider.name}

        try:
            existing = self.ledger.find_subscription(snapshot.external_id, provider.name)
            if existing is not None and occurred_at is not None and existing.synced_at is not None:
                if as_utc(existing.synced_at) > as_utc(occurred_at):
                    logger.info("reconcile.out_of_order_skipped", extra=ids)
                    return OperationResult.ok("Older than ledger state; skipped", skipped=True, **ids)

            sub, created, prev = self._store_snapshot(provider, snapshot, synced_at=occurred_at)
            event_type = "created" if created else _KIND_EVENT_TYPES.get(kind, "updated")
            if created or prev != sub.status or kind in _KIND_EVENT_TYPES:
                self.events.append(sub, event_type, status_from=prev, status_to=sub.status,
                                   data={"source": source or "webhook"})
            self._settle_pending_change(sub, source or "webhook")
            self.ledger.commit()
        except SQLAlchemyError as exc:
            self.ledger.rollback()
            logger.exception("reconcile.webhook_write_failed", extra=ids)
            return OperationResult.fail(LedgerWriteError(f"Ledger write failed: {exc}"), **ids)
        return OperationResult.ok("Subscription synced", status=sub.status, subscription=sub.to_dict(), **ids)

    def record_invoice_payment(self, provider_name: str, payment: Dict[str, Any], *, succeeded: bool,
                               source: Optional[str] = None) -> OperationResult:
        """Record an invoice payment outcome, then re-read the subscription it billed."""
        provider, err = self.resolve(provider_name)
        if err:
            return err
        sub_id = payment.get("subscription_id")
        ids = {"subscription_id": sub_id, "transaction_id": payment.get("transaction_id"), "provider": provider.name}

        refreshed = None
        if sub_id:
            refreshed = self.get_subscription(provider.name, sub_id, force_refresh=True)
            if not refreshed.success:
                logger.warning("reconcile.invoice_refresh_failed", extra=ids)

        try:
            sub = self.ledger.find_subscription(sub_id, provider.name)
            customer = self.ledger.ensure_customer(provider.name, payment.get("customer_id"))
            self.ledger.record_payment(
                provider.name,
                transaction_id=payment.get("transaction_id"),
                status="succeeded" if succeeded else "failed",
                amount=payment.get("amount"),
                currency=payment.get("currency"),
                customer=customer,
                subscription=sub,
                metadata={"source": source} if source else None,
            )
            if sub is not None:
                self.events.append(
                    sub, "payment_succeeded" if succeeded else "payment_failed",
                    status_from=sub.status, status_to=sub.status,
                    data={k: payment.get(k) for k in ("transaction_id", "amount", "currency", "attempt_count")},
                )
            self.ledger.commit()
        except SQLAlchemyError as exc:
            self.ledger.rollback()
            logger.exception("reconcile.payment_write_failed", extra=ids)
            return OperationResult.fail(LedgerWriteError(f"Ledger write failed: {exc}"), **ids)

        result = OperationResult.ok("Payment recorded", **ids)
        if refreshed is not None and refreshed.stale:
            result.mark_stale()
        return result

    def refresh_subscriptions(self, provider_name: Optional[str] = None, include_terminal: bool = False) -> Dict[str, int]:
        """Force-read every ledger subscription; used by the ``ledger refresh`` command."""
        counts = {"refreshed": 0, "stale": 0, "failed": 0}
        for sub in self._refresh_candidates(provider_name, include_terminal):
            result = self.get_subscription(sub.provider, sub.external_id, force_refresh=True)
            if not result.success:
                counts["failed"] += 1
            elif result.stale:
                counts["stale"] += 1
            else:
                counts["refreshed"] += 1
        return counts

    def _refresh_candidates(self, provider_name: Optional[str], include_terminal: bool) -> List[Subscription]:
        query = self.ledger.session.query(Subscription)
        if provider_name:
            query = query.filter(Subscription.provider == provider_name)
        if not include_terminal:
            query = query.filter(Subscription.status.notin_(TERMINAL_STATUSES))
        return query.order_by(Subscription.id).all()
