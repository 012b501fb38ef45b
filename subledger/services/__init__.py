"""
Per-request service wiring. Imports stay inside the builders so provider modules can
import the error taxonomy from this package without a cycle.
"""
from flask import current_app


def get_reconciler():
    from subledger.extensions import db
    from subledger.providers import get_registry
    from .event_log import EventLog
    from .ledger import LedgerStore
    from .reconciliation import ReconciliationService

    cfg = current_app.config
    ledger = LedgerStore(
        db.session,
        placeholder_email=cfg.get("PLACEHOLDER_CUSTOMER_EMAIL", "unknown@example.com"),
        placeholder_name=cfg.get("PLACEHOLDER_CUSTOMER_NAME", "Unknown Customer"),
    )
    return ReconciliationService(
        ledger,
        EventLog(db.session),
        get_registry(),
        max_age_seconds=cfg.get("LEDGER_MAX_AGE_SECONDS"),
    )


def get_catalog():
    from subledger.extensions import db
    from .plans import PlanCatalog

    return PlanCatalog(db.session)


def get_plan_changer():
    from .plan_change import PlanChangeOrchestrator

    return PlanChangeOrchestrator(get_reconciler(), get_catalog())


def get_ingestor():
    from .webhooks import WebhookIngestor

    return WebhookIngestor(get_reconciler())
