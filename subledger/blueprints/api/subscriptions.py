from flask import request

from subledger.extensions import limiter
from subledger.services import get_reconciler
from subledger.services.errors import OperationResult, ValidationError
from subledger.utils.responses import bool_arg, envelope, json_body, provider_arg
from subledger.utils.validators import clean_str, parse_when, positive_int
from . import bp


def _bad_time(field: str, **data):
    return envelope(OperationResult.fail(
        ValidationError(f"{field} must be an ISO-8601 timestamp or unix seconds", field_name=field), **data
    ))


@bp.post("/subscriptions")
@limiter.limit("30/minute")
def create_subscription():
    payload, err = json_body()
    if err:
        return envelope(err)
    result = get_reconciler().create_subscription(
        provider_arg(payload),
        customer_id=clean_str(payload.get("customer_id")),
        price_id=clean_str(payload.get("price_id")),
        plan_id=clean_str(payload.get("plan_id")),
        quantity=payload.get("quantity", 1),
        metadata=payload.get("metadata"),
        trial_period_days=payload.get("trial_period_days"),
        idempotency_key=clean_str(request.headers.get("Idempotency-Key") or payload.get("idempotency_key")),
        return_url=payload.get("return_url"),
        cancel_url=payload.get("cancel_url"),
    )
    return envelope(result)


@bp.get("/subscriptions/<subscription_id>")
def get_subscription(subscription_id):
    result = get_reconciler().get_subscription(
        provider_arg(),
        subscription_id,
        force_refresh=bool_arg(request.args.get("refresh")),
        best_effort=bool_arg(request.args.get("best_effort")),
    )
    return envelope(result)


@bp.put("/subscriptions/<subscription_id>")
@limiter.limit("30/minute")
def update_subscription(subscription_id):
    payload, err = json_body()
    if err:
        return envelope(err, subscription_id=subscription_id)
    cap = payload.get("cancel_at_period_end")
    result = get_reconciler().update_subscription(
        provider_arg(payload),
        subscription_id,
        price_id=clean_str(payload.get("price_id")),
        quantity=payload.get("quantity"),
        metadata=payload.get("metadata"),
        cancel_at_period_end=bool_arg(cap) if cap is not None else None,
        trial_end=payload.get("trial_end"),
        proration_behavior=clean_str(payload.get("proration_behavior")),
    )
    return envelope(result)


@bp.post("/subscriptions/<subscription_id>/pause")
@limiter.limit("30/minute")
def pause_subscription(subscription_id):
    payload, err = json_body()
    if err:
        return envelope(err, subscription_id=subscription_id)
    resume_at = None
    if payload.get("resume_at"):
        resume_at = parse_when(payload.get("resume_at"))
        if resume_at is None:
            return _bad_time("resume_at", subscription_id=subscription_id)
    result = get_reconciler().pause_subscription(
        provider_arg(payload), subscription_id, resume_at=resume_at, reason=clean_str(payload.get("reason")),
    )
    return envelope(result)


@bp.post("/subscriptions/<subscription_id>/resume")
@limiter.limit("30/minute")
def resume_subscription(subscription_id):
    payload, err = json_body()
    if err:
        return envelope(err, subscription_id=subscription_id)
    result = get_reconciler().resume_subscription(
        provider_arg(payload), subscription_id, reason=clean_str(payload.get("reason")),
    )
    return envelope(result)


@bp.post("/subscriptions/<subscription_id>/cancel")
@limiter.limit("30/minute")
def cancel_subscription(subscription_id):
    payload, err = json_body()
    if err:
        return envelope(err, subscription_id=subscription_id)
    result = get_reconciler().cancel_subscription(
        provider_arg(payload),
        subscription_id,
        cancel_immediately=bool_arg(payload.get("cancel_immediately"), default=True),
        reason=clean_str(payload.get("reason")),
    )
    return envelope(result)


@bp.post("/subscriptions/usage")
@limiter.limit("120/minute")
def report_usage():
    payload, err = json_body()
    if err:
        return envelope(err)
    timestamp = None
    if payload.get("timestamp"):
        timestamp = parse_when(payload.get("timestamp"))
        if timestamp is None:
            return _bad_time("timestamp", subscription_item_id=payload.get("subscription_item_id"))
    result = get_reconciler().report_usage(
        provider_arg(payload),
        clean_str(payload.get("subscription_item_id")),
        payload.get("quantity"),
        timestamp=timestamp,
        action=clean_str(payload.get("action")) or "increment",
        metadata=payload.get("metadata"),
    )
    return envelope(result)


@bp.get("/subscriptions/<subscription_id>/events")
def subscription_events(subscription_id):
    limit = positive_int(request.args.get("limit")) if request.args.get("limit") else None
    result = get_reconciler().subscription_events(provider_arg(), subscription_id, limit=limit)
    return envelope(result)
