from flask import request

from subledger.extensions import limiter
from subledger.services import get_catalog, get_plan_changer
from subledger.services.errors import NotFound, OperationResult, ValidationError
from subledger.utils.responses import bool_arg, envelope, json_body, provider_arg
from subledger.utils.validators import clean_str, parse_when
from . import bp


@bp.get("/plans")
def list_plans():
    plans = get_catalog().list_plans(include_inactive=bool_arg(request.args.get("include_inactive")))
    return envelope(OperationResult.ok("Plans retrieved", plans=[p.to_dict() for p in plans]))


# Registered before /plans/<plan_id> so "compare" is not taken for a plan id
@bp.get("/plans/compare")
def compare_plans():
    result = get_catalog().compare(
        clean_str(request.args.get("from_plan_id")),
        clean_str(request.args.get("to_plan_id")),
    )
    return envelope(result)


@bp.get("/plans/<plan_id>")
def get_plan(plan_id):
    plan = get_catalog().get_plan(plan_id)
    if plan is None:
        return envelope(OperationResult.fail(NotFound(f"Plan {plan_id} not found"), plan_id=plan_id))
    return envelope(OperationResult.ok("Plan retrieved", plan=plan.to_dict()))


@bp.post("/plans/change")
@limiter.limit("20/minute")
def change_plan():
    payload, err = json_body()
    if err:
        return envelope(err)

    when = {}
    for field in ("start_date", "end_date"):
        raw = payload.get(field)
        if raw in (None, ""):
            when[field] = None
            continue
        when[field] = parse_when(raw)
        if when[field] is None:
            return envelope(OperationResult.fail(
                ValidationError(f"{field} must be an ISO-8601 timestamp or unix seconds", field_name=field),
                subscription_id=payload.get("subscription_id"),
            ))

    result = get_plan_changer().change_plan(
        provider_arg(payload),
        clean_str(payload.get("subscription_id")),
        to_plan=clean_str(payload.get("to_plan_id") or payload.get("to_plan")),
        from_plan=clean_str(payload.get("from_plan_id") or payload.get("from_plan")),
        apply_immediately=bool_arg(payload.get("apply_immediately"), default=True),
        proration_behavior=clean_str(payload.get("proration_behavior")) or "create_prorations",
        start_date=when["start_date"],
        end_date=when["end_date"],
        billing_cycle_anchor=clean_str(payload.get("billing_cycle_anchor")) or "unchanged",
    )
    return envelope(result)
