import click
from flask import current_app
from flask.cli import with_appcontext

from subledger.extensions import db
from subledger.services import get_catalog, get_reconciler
from subledger.utils.helpers import utcnow


@click.group()
def ledger():
    """Ledger maintenance."""


@ledger.command("refresh")
@click.option("--provider", default=None, help="Only subscriptions from this provider")
@click.option("--include-terminal", is_flag=True, help="Also re-read cancelled/expired subscriptions")
@with_appcontext
def ledger_refresh(provider, include_terminal):
    if provider and provider not in current_app.extensions["billing_providers"]:
        raise click.ClickException(f"Unknown provider: {provider}")
    counts = get_reconciler().refresh_subscriptions(provider, include_terminal=include_terminal)
    click.echo(f"Refresh complete: refreshed={counts['refreshed']} stale={counts['stale']} failed={counts['failed']}")


@ledger.command("events")
@click.argument("subscription_id")
@click.option("--provider", default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@with_appcontext
def ledger_events(subscription_id, provider, limit):
    provider = provider or current_app.config.get("DEFAULT_PROVIDER")
    result = get_reconciler().subscription_events(provider, subscription_id, limit=limit)
    if not result.success:
        raise click.ClickException(result.message)
    for ev in result.data["events"]:
        click.echo(f"{ev['created_at']}  {ev['type']:<22} {ev['status_from'] or '-'} -> {ev['status_to'] or '-'}")


@click.group()
def plans():
    """Plan catalog."""


@plans.command("add")
@click.option("--id", "plan_id", required=True)
@click.option("--name", required=True)
@click.option("--price", required=True, help="Major units, e.g. 29.00")
@click.option("--billing-cycle", type=click.Choice(["monthly", "yearly"]), default="monthly")
@click.option("--currency", default="USD")
@click.option("--description", default=None)
@click.option("--stripe-price-id", default=None)
@click.option("--paypal-plan-id", default=None)
@click.option("--order", type=int, default=0)
@click.option("--feature", "features", multiple=True, help="NAME or NAME=LIMIT; repeatable")
@with_appcontext
def plans_add(plan_id, name, price, billing_cycle, currency, description, stripe_price_id,
              paypal_plan_id, order, features):
    parsed = []
    for raw in features:
        fname, _, limit = raw.partition("=")
        try:
            parsed.append({"name": fname.strip(), "feature_limit": int(limit) if limit else None})
        except ValueError:
            raise click.ClickException(f"Feature limit must be an integer: {raw}")

    plan = get_catalog().add_plan(
        plan_id=plan_id, name=name, price=price, billing_cycle=billing_cycle, currency=currency,
        description=description, stripe_price_id=stripe_price_id, paypal_plan_id=paypal_plan_id,
        order=order, features=parsed,
    )
    db.session.commit()
    click.echo(f"Plan saved id={plan.id} price={plan.price} {plan.currency}/{plan.billing_cycle} features={len(parsed)}")


@plans.command("list")
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive plans")
@with_appcontext
def plans_list(include_inactive):
    for plan in get_catalog().list_plans(include_inactive=include_inactive):
        click.echo(
            f"{plan.id:<16} {plan.name:<20} {plan.price} {plan.currency}/{plan.billing_cycle}"
            f"  stripe={plan.stripe_price_id or '-'} paypal={plan.paypal_plan_id or '-'}"
        )


@click.group("plan-changes")
def plan_changes():
    """Locally scheduled plan changes."""


@plan_changes.command("pending")
@click.option("--due", is_flag=True, help="Only changes whose start time has passed")
@with_appcontext
def plan_changes_pending(due):
    rows = get_reconciler().ledger.pending_scheduled_changes(due_before=utcnow() if due else None)
    if not rows:
        click.echo("No pending plan changes")
        return
    for row in rows:
        click.echo(
            f"#{row.id} {row.provider}:{row.subscription_external_id} "
            f"{row.from_plan_id or '?'} -> {row.to_plan_id} at {row.scheduled_at.isoformat()}"
        )


def register_cli(app):
    app.cli.add_command(ledger)
    app.cli.add_command(plans)
    app.cli.add_command(plan_changes)
