from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import sqlalchemy as sa

from subledger.models import Plan, PlanFeature
from subledger.services.errors import NotFound, OperationResult, ValidationError


class PlanCatalog:
    """Logical plans and their per-provider price ids."""

    def __init__(self, session):
        self.session = session

    def list_plans(self, include_inactive: bool = False) -> List[Plan]:
        stmt = sa.select(Plan)
        if not include_inactive:
            stmt = stmt.where(Plan.is_active.is_(True))
        return list(self.session.execute(stmt.order_by(Plan.sort_order, Plan.id)).scalars())

    def get_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        return self.session.get(Plan, plan_id)

    def provider_price_id(self, provider: str, plan_id: str) -> str:
        """Catalog plan id -> provider price id. Unknown ids are already provider ids."""
        plan = self.get_plan(plan_id)
        if plan is not None:
            mapped = plan.provider_price_id(provider)
            if mapped:
                return mapped
        return plan_id

    def add_plan(self, *, plan_id: str, name: str, price: Any, billing_cycle: str = "monthly",
                 currency: str = "USD", description: Optional[str] = None,
                 stripe_price_id: Optional[str] = None, paypal_plan_id: Optional[str] = None,
                 order: int = 0, features: Iterable[Dict[str, Any]] = ()) -> Plan:
        plan = self.get_plan(plan_id) or Plan(id=plan_id)
        plan.name = name
        plan.price = Decimal(str(price))
        plan.billing_cycle = billing_cycle
        plan.currency = currency.upper()
        plan.description = description
        plan.stripe_price_id = stripe_price_id
        plan.paypal_plan_id = paypal_plan_id
        plan.sort_order = order
        plan.is_active = True
        plan.features = [
            PlanFeature(
                name=f["name"],
                description=f.get("description"),
                included=bool(f.get("included", True)),
                feature_limit=f.get("feature_limit"),
                units=f.get("units"),
                sort_order=idx,
            )
            for idx, f in enumerate(features)
        ]
        self.session.add(plan)
        self.session.flush()
        return plan

    def compare(self, from_plan_id: Optional[str], to_plan_id: Optional[str]) -> OperationResult:
        if not from_plan_id or not to_plan_id:
            err = ValidationError("Both from_plan_id and to_plan_id are required",
                                  field_name="from_plan_id" if not from_plan_id else "to_plan_id")
            return OperationResult.fail(err, from_plan_id=from_plan_id, to_plan_id=to_plan_id)

        src, dst = self.get_plan(from_plan_id), self.get_plan(to_plan_id)
        if src is None or dst is None:
            return OperationResult.fail(NotFound("One or both plans not found"),
                                        from_plan_id=from_plan_id, to_plan_id=to_plan_id)

        difference = Decimal(dst.price) - Decimal(src.price)
        src_features = {f.name: f for f in src.features}
        dst_features = {f.name: f for f in dst.features}

        names = list(src_features) + [n for n in dst_features if n not in src_features]
        comparison = []
        for name in names:
            a, b = src_features.get(name), dst_features.get(name)
            a_in, b_in = bool(a and a.included), bool(b and b.included)
            a_limit = a.feature_limit if a else None
            b_limit = b.feature_limit if b else None
            improved = b_in and (not a_in or (a_limit is not None and b_limit is not None and b_limit > a_limit))
            comparison.append({
                "name": name,
                "from_included": a_in,
                "to_included": b_in,
                "from_limit": a_limit,
                "to_limit": b_limit,
                "units": (b.units if b else None) or (a.units if a else None),
                "improved": improved,
            })

        return OperationResult.ok(
            "Plans compared",
            from_plan=src.to_dict(),
            to_plan=dst.to_dict(),
            price_difference=float(difference),
            is_upgrade=difference > 0,
            feature_comparison=comparison,
            billing_cycle_change=src.billing_cycle != dst.billing_cycle,
        )
