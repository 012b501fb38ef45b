from flask import request

from subledger.extensions import limiter
from subledger.services import get_reconciler
from subledger.services.errors import OperationResult, ValidationError
from subledger.utils.helpers import to_minor_units
from subledger.utils.responses import envelope, json_body, provider_arg
from subledger.utils.validators import clean_str
from . import bp


def _amount(payload, *, required: bool):
    """
    ``amount_minor`` is taken as-is; ``amount`` is in major units (12.50 -> 1250).
    Returns (minor_units, error_result).
    """
    if payload.get("amount_minor") is not None:
        return payload.get("amount_minor"), None
    if payload.get("amount") is None:
        if required:
            return None, OperationResult.fail(ValidationError("amount is required", field_name="amount"))
        return None, None
    try:
        return to_minor_units(payload.get("amount")), None
    except ValueError:
        return None, OperationResult.fail(ValidationError("amount must be a number", field_name="amount"))


@bp.post("/payments")
@limiter.limit("30/minute")
def create_payment():
    payload, err = json_body()
    if err:
        return envelope(err)
    amount, err = _amount(payload, required=True)
    if err:
        return envelope(err)
    result = get_reconciler().create_payment(
        provider_arg(payload),
        amount=amount,
        currency=clean_str(payload.get("currency")),
        description=clean_str(payload.get("description")),
        customer_id=clean_str(payload.get("customer_id")),
        metadata=payload.get("metadata"),
        return_url=payload.get("return_url"),
        cancel_url=payload.get("cancel_url"),
    )
    return envelope(result)


@bp.post("/payments/refund")
@limiter.limit("10/minute")
def refund_payment():
    payload, err = json_body()
    if err:
        return envelope(err)
    amount, err = _amount(payload, required=False)
    if err:
        return envelope(err, transaction_id=payload.get("transaction_id"))
    result = get_reconciler().refund_payment(
        provider_arg(payload),
        clean_str(payload.get("transaction_id") or request.args.get("transaction_id")),
        amount=amount,
        currency=clean_str(payload.get("currency")),
        reason=clean_str(payload.get("reason")),
    )
    return envelope(result)
