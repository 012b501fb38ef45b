from .customer import Customer
from .subscription import Subscription, SubscriptionItem, STATUSES, TERMINAL_STATUSES
from .subscription_event import SubscriptionEvent, EVENT_TYPES
from .usage_record import UsageRecord, USAGE_ACTIONS
from .webhook_event import WebhookEvent
from .plan import Plan, PlanFeature
from .scheduled_plan_change import ScheduledPlanChange
from .payment import Payment, Refund

__all__ = [
    "Customer",
    "Subscription",
    "SubscriptionItem",
    "SubscriptionEvent",
    "UsageRecord",
    "WebhookEvent",
    "Plan",
    "PlanFeature",
    "ScheduledPlanChange",
    "Payment",
    "Refund",
    "STATUSES",
    "TERMINAL_STATUSES",
    "EVENT_TYPES",
    "USAGE_ACTIONS",
]
