"""
Webhook ingestion: deduplicate provider notifications by (provider, event id) and
feed them to the reconciliation service.

Handler failures are recorded on the webhook row and never propagate, so the
provider gets its acknowledgement and retries stay bounded.
"""
import logging
from typing import Any, Dict, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from subledger.models import WebhookEvent
from subledger.models.webhook_event import STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSED
from subledger.providers.base import EventKind, ProviderEvent
from subledger.services.errors import OperationResult, ValidationError
from subledger.services.reconciliation import ReconciliationService
from subledger.utils.helpers import jsonable, utcnow

logger = logging.getLogger(__name__)

_SUBSCRIPTION_KINDS = frozenset({
    EventKind.SUBSCRIPTION_CREATED,
    EventKind.SUBSCRIPTION_UPDATED,
    EventKind.SUBSCRIPTION_CANCELED,
    EventKind.SUBSCRIPTION_PAUSED,
    EventKind.SUBSCRIPTION_RESUMED,
})


class WebhookIngestor:
    def __init__(self, reconciler: ReconciliationService):
        self.reconciler = reconciler

    @property
    def session(self):
        return self.reconciler.ledger.session

    def find(self, provider: str, event_id: str) -> Optional[WebhookEvent]:
        return self.session.execute(
            sa.select(WebhookEvent).where(WebhookEvent.provider == provider, WebhookEvent.event_id == event_id)
        ).scalar_one_or_none()

    def ingest(self, provider_name: str, event: Mapping[str, Any]) -> OperationResult:
        """Process one verified event. Returns ``duplicate=True`` for redeliveries."""
        provider, err = self.reconciler.resolve(provider_name)
        if err:
            return err
        try:
            parsed = provider.parse_event(event)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("webhook.parse_failed", extra={"provider": provider.name, "error": str(exc)})
            return OperationResult.fail(ValidationError(f"malformed_event: {exc}", field_name="event"))
        if not parsed.event_id or not parsed.event_type:
            return OperationResult.fail(ValidationError("malformed_event", field_name="event"))

        ids = {"provider": provider.name, "event_id": parsed.event_id, "event_type": parsed.event_type}

        # 1) Idempotency guard (short-circuit on redelivery, whatever the earlier outcome)
        existing = self.find(provider.name, parsed.event_id)
        if existing is not None:
            return self._redelivered(existing, ids)

        # 2) Persist raw payload before handling (for audit/forensics)
        row = WebhookEvent(
            provider=provider.name,
            event_id=parsed.event_id,
            event_type=parsed.event_type,
            payload=jsonable(dict(event)),
            processing_status=STATUS_PENDING,
            delivery_count=1,
            last_delivery_at=utcnow(),
        )
        self.session.add(row)
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent delivery inserted the same event first
            self.session.rollback()
            existing = self.find(provider.name, parsed.event_id)
            if existing is not None:
                return self._redelivered(existing, ids)
            raise

        # 3) Dispatch; failures land on the row
        try:
            outcome = self.dispatch(provider.name, parsed)
            error = None if outcome.success else outcome.message
        except Exception as exc:
            self.session.rollback()
            logger.exception("webhook.handler_error", extra=ids)
            error = f"handler_error:{type(exc).__name__}: {exc}"

        status = STATUS_FAILED if error else STATUS_PROCESSED
        try:
            row = self.find(provider.name, parsed.event_id)
            row.processing_status = status
            row.error_message = error
            row.processed_at = utcnow()
            self.session.commit()
        except SQLAlchemyError as exc:
            # Row stays 'pending'; the handler outcome is still reported
            self.session.rollback()
            logger.exception("webhook.status_write_failed", extra=dict(ids, status=status))
            return OperationResult.ok("Webhook handled; status not recorded", duplicate=False, status=status,
                                      error=error, status_recorded=False, status_error=str(exc), **ids)

        logger.info("webhook.ingested", extra=dict(ids, status=status))
        return OperationResult.ok("Webhook processed", duplicate=False, status=status,
                                  error=error, **ids)

    def _redelivered(self, existing: WebhookEvent, ids: Dict[str, Any]) -> OperationResult:
        try:
            existing.delivery_count = (existing.delivery_count or 0) + 1
            existing.last_delivery_at = utcnow()
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("webhook.delivery_count_failed", extra=ids)
        logger.info("webhook.duplicate", extra=ids)
        return OperationResult.ok("Duplicate webhook ignored", duplicate=True,
                                  status=existing.processing_status, **ids)

    def dispatch(self, provider_name: str, event: ProviderEvent) -> OperationResult:
        rec = self.reconciler
        source = f"webhook:{event.event_type}"

        if event.kind in _SUBSCRIPTION_KINDS:
            if event.subscription is not None and event.subscription.external_id:
                return rec.apply_provider_state(provider_name, event.subscription, occurred_at=event.occurred_at,
                                                kind=event.kind, source=source)
            if event.subscription_id:
                return rec.get_subscription(provider_name, event.subscription_id, force_refresh=True)
            return OperationResult.fail(ValidationError("subscription event without subscription id"))

        if event.kind in (EventKind.PAYMENT_SUCCEEDED, EventKind.PAYMENT_FAILED):
            return rec.record_invoice_payment(provider_name, event.payment or {},
                                              succeeded=event.kind is EventKind.PAYMENT_SUCCEEDED, source=source)

        # Other events: acknowledged, nothing to reconcile
        return OperationResult.ok("Event ignored", ignored=True)
