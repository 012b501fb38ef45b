"""
Plan changes: immediate or scheduled, in place where the provider allows it,
cancel-and-recreate where it does not.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from subledger.models import Subscription
from subledger.providers.base import (
    BillingProvider,
    Capability,
    SchedulePhase,
    ScheduleRequest,
    SubscriptionRequest,
    SubscriptionUpdate,
)
from subledger.services.errors import LedgerWriteError, NotFound, OperationResult
from subledger.services.plans import PlanCatalog
from subledger.services.reconciliation import ReconciliationService
from subledger.utils.helpers import as_utc, utcnow
from subledger.utils.validators import clean_str

logger = logging.getLogger(__name__)

PRORATION_BEHAVIORS = ("create_prorations", "none", "always_invoice")
BILLING_CYCLE_ANCHORS = ("unchanged", "now")
PLAN_CHANGE_REASON = "plan change"


class PlanChangeOrchestrator:
    def __init__(self, reconciler: ReconciliationService, catalog: PlanCatalog):
        self.reconciler = reconciler
        self.catalog = catalog

    @property
    def ledger(self):
        return self.reconciler.ledger

    @property
    def events(self):
        return self.reconciler.events

    def change_plan(self, provider_name: str, subscription_id: str, *, to_plan: str,
                    from_plan: Optional[str] = None, apply_immediately: bool = True,
                    proration_behavior: str = "create_prorations",
                    start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                    billing_cycle_anchor: str = "unchanged") -> OperationResult:
        rec = self.reconciler
        provider, err = rec.resolve(provider_name)
        if err:
            return err
        ids = {"subscription_id": subscription_id, "provider": provider.name,
               "from_plan": from_plan, "to_plan": to_plan}

        if not clean_str(subscription_id):
            return rec.validation_failure("subscription id is required", "subscription_id", **ids)
        if not clean_str(to_plan):
            return rec.validation_failure("to_plan is required", "to_plan", **ids)
        if from_plan and from_plan == to_plan:
            return rec.validation_failure("from_plan and to_plan must differ", "to_plan", **ids)
        if proration_behavior not in PRORATION_BEHAVIORS:
            return rec.validation_failure(
                f"proration_behavior must be one of {', '.join(PRORATION_BEHAVIORS)}", "proration_behavior", **ids)
        if billing_cycle_anchor not in BILLING_CYCLE_ANCHORS:
            return rec.validation_failure("billing_cycle_anchor must be 'unchanged' or 'now'", "billing_cycle_anchor", **ids)
        if not apply_immediately:
            if start_date is None or as_utc(start_date) <= utcnow():
                return rec.validation_failure("scheduled changes need a future start_date", "start_date", **ids)
            if end_date is not None and as_utc(end_date) <= as_utc(start_date):
                return rec.validation_failure("end_date must be after start_date", "end_date", **ids)

        to_price = self.catalog.provider_price_id(provider.name, to_plan)
        from_price = self.catalog.provider_price_id(provider.name, from_plan) if from_plan else None

        local = self.ledger.find_subscription(subscription_id, provider.name)
        if local is not None and from_price and local.plan_id and local.plan_id != from_price:
            # Provider is authoritative; the caller's view may simply be out of date
            logger.warning(
                "plan_change.from_plan_mismatch",
                extra={"subscription_id": subscription_id, "ledger_plan": local.plan_id, "from_plan": from_price},
            )

        if apply_immediately:
            if provider.supports(Capability.IN_PLACE_PLAN_CHANGE):
                return self._change_in_place(provider, subscription_id, from_plan, to_plan, to_price,
                                             proration_behavior, billing_cycle_anchor, ids)
            return self._cancel_and_recreate(provider, subscription_id, from_plan, to_plan, to_price, ids)

        if provider.supports(Capability.CREATE_SCHEDULE):
            return self._schedule_with_provider(provider, subscription_id, from_plan, from_price, to_plan, to_price,
                                                proration_behavior, start_date, end_date, ids)
        return self._schedule_locally(provider, subscription_id, from_plan, from_price, to_plan, to_price,
                                      start_date, ids)

    # ------------------------------------------------------------------
    def _local_or_fetch(self, provider: BillingProvider, subscription_id: str) -> Optional[Subscription]:
        local = self.ledger.find_subscription(subscription_id, provider.name)
        if local is not None:
            return local
        self.reconciler.get_subscription(provider.name, subscription_id, force_refresh=True)
        return self.ledger.find_subscription(subscription_id, provider.name)

    def _change_in_place(self, provider, subscription_id, from_plan, to_plan, to_price,
                         proration_behavior, billing_cycle_anchor, ids) -> OperationResult:
        rec = self.reconciler
        update = SubscriptionUpdate(
            price_id=to_price,
            proration_behavior=proration_behavior,
            billing_cycle_anchor="now" if billing_cycle_anchor == "now" else None,
        )
        res = provider.update_subscription(subscription_id, update)
        if not res.success or res.subscription is None:
            return rec.provider_failure("change_plan", provider, res, **ids)

        snap = res.subscription
        data = {"from_plan": from_plan, "to_plan": to_plan, "price_id": to_price,
                "proration_behavior": proration_behavior}
        result = OperationResult.ok(state="changed", **ids)
        sub = rec.guarded_write(result, "change_plan", lambda: rec.record_change(
            provider, snap, "plan_changed", data, plan_id=to_price, pending_update=None,
        ))
        logger.info("plan_change.applied", extra={"subscription_id": subscription_id, "to_plan": to_plan})
        return rec.subscription_result("Plan changed", provider, snap, sub, result)

    def _cancel_and_recreate(self, provider, subscription_id, from_plan, to_plan, to_price, ids) -> OperationResult:
        rec = self.reconciler
        old = self._local_or_fetch(provider, subscription_id)
        if old is None:
            return OperationResult.fail(NotFound(f"Subscription {subscription_id} not found"), **ids)
        customer_id = old.customer.external_id if old.customer is not None else None
        quantity = old.items[0].quantity if old.items else 1
        metadata = dict(old.metadata_json or {})

        cancelled = provider.cancel_subscription(subscription_id, reason=PLAN_CHANGE_REASON, at_period_end=False)
        if not cancelled.success or cancelled.subscription is None:
            return rec.provider_failure("change_plan", provider, cancelled, **ids)

        result = OperationResult.ok(state="replaced", previous_subscription_id=subscription_id, **ids)
        rec.guarded_write(result, "change_plan", lambda: rec.record_change(
            provider, cancelled.subscription, "cancelled",
            {"reason": PLAN_CHANGE_REASON, "to_plan": to_plan}, cancellation_reason=PLAN_CHANGE_REASON,
        ))

        created = provider.create_subscription(SubscriptionRequest(
            customer_id=customer_id, price_id=to_price, plan_id=to_price, quantity=quantity,
            metadata={**metadata, "replaces_subscription": subscription_id},
        ))
        if not created.success or created.subscription is None:
            # Old subscription is already gone on the provider side; say so explicitly
            logger.error("plan_change.recreate_failed", extra={"subscription_id": subscription_id, "to_plan": to_plan})
            return rec.provider_failure("change_plan", provider, created,
                                        state="cancelled_without_replacement",
                                        previous_subscription_id=subscription_id, **ids)

        snap = created.subscription
        if not snap.customer_external_id:
            snap.customer_external_id = customer_id
        data = {
            "from_plan": from_plan or old.plan_id,
            "to_plan": to_plan,
            "previous_subscription_id": subscription_id,
            "new_subscription_id": snap.external_id,
        }
        result.data["subscription_id"] = snap.external_id
        sub = rec.guarded_write(result, "change_plan", lambda: rec.record_change(
            provider, snap, "plan_changed", data, plan_id=to_price, pending_update=None,
        ))
        logger.info("plan_change.replaced", extra=data)
        return rec.subscription_result("Plan changed by replacing the subscription", provider, snap, sub, result)

    def _schedule_with_provider(self, provider, subscription_id, from_plan, from_price, to_plan, to_price,
                                proration_behavior, start_date, end_date, ids) -> OperationResult:
        rec = self.reconciler
        sub = self._local_or_fetch(provider, subscription_id)
        if sub is None:
            return OperationResult.fail(NotFound(f"Subscription {subscription_id} not found"), **ids)
        current_price = sub.plan_id or from_price
        if not current_price:
            return rec.validation_failure("from_plan is required when the current plan is unknown", "from_plan", **ids)
        quantity = sub.items[0].quantity if sub.items else 1

        res = provider.create_schedule(ScheduleRequest(
            subscription_id=subscription_id,
            phases=[
                SchedulePhase(price_id=current_price, end_date=start_date, quantity=quantity),
                SchedulePhase(price_id=to_price, start_date=start_date, end_date=end_date, quantity=quantity),
            ],
            proration_behavior=proration_behavior,
        ))
        if not res.success:
            return rec.provider_failure("change_plan", provider, res, **ids)

        pending = self._pending(to_plan, to_price, start_date, proration_behavior, schedule_id=res.provider_id)
        result = OperationResult.ok("Plan change scheduled", state="scheduled", schedule_id=res.provider_id,
                                    pending_update=pending, **ids)

        def write():
            self.ledger.set_fields(sub, pending_update=pending)
            self.events.append(sub, "plan_change_scheduled", status_from=sub.status, status_to=sub.status,
                               data={"from_plan": from_plan or current_price, **pending})
            return sub

        if rec.guarded_write(result, "change_plan", write) is not None:
            result.data["subscription"] = sub.to_dict()
        return result

    def _schedule_locally(self, provider, subscription_id, from_plan, from_price, to_plan, to_price,
                          start_date, ids) -> OperationResult:
        rec = self.reconciler
        sub = self._local_or_fetch(provider, subscription_id)
        if sub is None:
            return OperationResult.fail(NotFound(f"Subscription {subscription_id} not found"), **ids)

        result = OperationResult.ok("Plan change scheduled", state="scheduled", provider_call=False, **ids)

        def write():
            change = self.ledger.add_scheduled_change(
                subscription_external_id=subscription_id,
                provider=provider.name,
                from_plan_id=from_price or sub.plan_id,
                to_plan_id=to_price,
                scheduled_at=as_utc(start_date),
                metadata={"to_plan": to_plan},
            )
            pending = self._pending(to_plan, to_price, start_date, None, scheduled_change_id=change.id)
            self.ledger.set_fields(sub, pending_update=pending)
            self.events.append(sub, "plan_change_scheduled", status_from=sub.status, status_to=sub.status,
                               data={"from_plan": from_plan or sub.plan_id, **pending})
            return pending

        pending = rec.guarded_write(result, "change_plan", write)
        if pending is None:
            # Nothing happened on the provider side, so a lost intent is a failure
            return OperationResult.fail(LedgerWriteError("Could not persist the scheduled plan change"), **ids)
        result.data["pending_update"] = pending
        result.data["subscription"] = sub.to_dict()
        return result

    @staticmethod
    def _pending(to_plan: str, to_price: str, start_date: datetime, proration_behavior: Optional[str],
                 **extra) -> Dict[str, Any]:
        pending: Dict[str, Any] = {
            "to_plan": to_plan,
            "to_price_id": to_price,
            "scheduled_at": as_utc(start_date).isoformat(),
        }
        if proration_behavior:
            pending["proration_behavior"] = proration_behavior
        pending.update(extra)
        return pending
