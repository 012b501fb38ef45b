from flask import request

from subledger.extensions import limiter
from subledger.services import get_reconciler
from subledger.utils.responses import bool_arg, envelope, json_body, provider_arg
from subledger.utils.validators import clean_str
from . import bp


@bp.post("/customers")
@limiter.limit("30/minute")
def create_customer():
    payload, err = json_body()
    if err:
        return envelope(err)
    result = get_reconciler().create_customer(
        provider_arg(payload),
        payload.get("email"),
        name=payload.get("name"),
        metadata=payload.get("metadata"),
    )
    return envelope(result)


@bp.get("/customers/<customer_id>")
def get_customer(customer_id):
    return envelope(get_reconciler().get_customer(provider_arg(), customer_id))


@bp.put("/customers/<customer_id>")
@limiter.limit("30/minute")
def update_customer(customer_id):
    payload, err = json_body()
    if err:
        return envelope(err, customer_id=customer_id)
    result = get_reconciler().update_customer(
        provider_arg(payload),
        customer_id,
        email=payload.get("email"),
        name=payload.get("name"),
        metadata=payload.get("metadata"),
    )
    return envelope(result)


@bp.delete("/customers/<customer_id>")
@limiter.limit("10/minute")
def delete_customer(customer_id):
    result = get_reconciler().delete_customer(
        provider_arg(),
        customer_id,
        best_effort=bool_arg(request.args.get("best_effort")),
    )
    return envelope(result)


@bp.get("/customers/<customer_id>/subscriptions")
def customer_subscriptions(customer_id):
    return envelope(get_reconciler().list_customer_subscriptions(provider_arg(), customer_id))


@bp.post("/customers/<customer_id>/payment-methods")
@limiter.limit("30/minute")
def attach_payment_method(customer_id):
    payload, err = json_body()
    if err:
        return envelope(err, customer_id=customer_id)
    result = get_reconciler().attach_payment_method(
        provider_arg(payload),
        customer_id,
        clean_str(payload.get("payment_method_id")),
        set_default=bool_arg(payload.get("set_default")),
    )
    return envelope(result)


@bp.post("/customers/<customer_id>/default-payment-method")
@limiter.limit("30/minute")
def set_default_payment_method(customer_id):
    payload, err = json_body()
    if err:
        return envelope(err, customer_id=customer_id)
    result = get_reconciler().set_default_payment_method(
        provider_arg(payload), customer_id, clean_str(payload.get("payment_method_id")),
    )
    return envelope(result)
