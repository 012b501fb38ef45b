from typing import Any, Dict, Optional, Tuple

from flask import current_app, jsonify, request

from subledger.services.errors import ErrorKind, OperationResult, ValidationError
from subledger.utils.helpers import jsonable
from subledger.utils.validators import clean_str

# Provider and capability failures are handled outcomes, not transport errors
_HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CAPABILITY_UNSUPPORTED: 200,
    ErrorKind.PROVIDER: 200,
    ErrorKind.CONFLICT_OR_STALE: 200,
    ErrorKind.LEDGER_WRITE: 500,
}


def http_status(result: OperationResult) -> int:
    if result.success:
        return 200
    return _HTTP_STATUS.get(result.error_kind, 500)


def envelope(result: OperationResult, **extra_data):
    """{success, message, data} plus error/tag details; identifiers stay in data on failure."""
    data = dict(result.data)
    data.update(extra_data)
    body: Dict[str, Any] = {
        "success": result.success,
        "message": result.message,
        "data": jsonable(data),
    }
    if result.error_kind is not None:
        err = result.error
        body["error"] = {
            "kind": result.error_kind.value,
            "field": getattr(err, "field", None),
            "code": getattr(err, "code", None),
        }
    if result.tags:
        body["tags"] = [t.value for t in result.tags]
    if result.stale:
        body["stale"] = True
    if not result.ledger_synced:
        body["ledger_synced"] = False
    return jsonify(body), http_status(result)


def json_body() -> Tuple[Dict[str, Any], Optional[OperationResult]]:
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return {}, OperationResult.fail(ValidationError("payload must be a JSON object", field_name="body"))
    return payload, None


def provider_arg(payload: Optional[Dict[str, Any]] = None) -> str:
    """Provider from the body, then the query string, then the configured default."""
    value = clean_str((payload or {}).get("provider"), max_len=50) or clean_str(request.args.get("provider"), max_len=50)
    return (value or clean_str(current_app.config.get("DEFAULT_PROVIDER")) or "stripe").lower()


def bool_arg(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
