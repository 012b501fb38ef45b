import hashlib
import logging

from flask import jsonify, request

from subledger.providers import get_registry
from subledger.services import get_ingestor
from subledger.services.errors import ErrorKind, ProviderAuthError, ProviderError
from . import bp

logger = logging.getLogger(__name__)


def _receive(provider_name: str):
    """
    Verify, then hand the event to the ingestor. Signature failures are 400 and
    never touch the ledger; verification that could not run is 500 so the
    provider retries.
    """
    provider = get_registry().get(provider_name)
    raw_bytes = request.get_data(cache=False, as_text=False) or b""

    # 1) Verify signature
    try:
        event = provider.verify_webhook(raw_bytes, request.headers)
    except ProviderAuthError as exc:
        digest = hashlib.sha256(raw_bytes).hexdigest()[:32]
        logger.warning("webhook.signature_invalid", extra={"provider": provider_name, "digest": digest})
        return jsonify({"error": exc.message}), 400
    except ProviderError as exc:
        logger.error("webhook.verification_unavailable", extra={"provider": provider_name, "error": exc.message})
        return jsonify({"error": exc.message}), 500

    if not isinstance(event, dict) or not event.get("id"):
        return jsonify({"error": "malformed_event"}), 400

    # 2) Dedup + reconcile
    result = get_ingestor().ingest(provider_name, event)
    if not result.success:
        status = 400 if result.error_kind is ErrorKind.VALIDATION else 500
        return jsonify({"error": "malformed_event" if status == 400 else result.message}), status

    return jsonify({
        "ok": True,
        "duplicate": result.data.get("duplicate", False),
        "status": result.data.get("status"),
    }), 200


@bp.post("/stripe")
def stripe_webhook():
    """Stripe -> /webhooks/stripe"""
    return _receive("stripe")


@bp.post("/paypal")
def paypal_webhook():
    """PayPal -> /webhooks/paypal"""
    return _receive("paypal")
