import json
import logging

logger = logging.getLogger("url_shortener")


def log_event(event_name: str, payload) -> None:
    """Emit a structured `{event_name, payload}` record."""
    try:
        body = json.dumps(payload, default=_jsonable, sort_keys=True)
    except (TypeError, ValueError):
        body = repr(payload)
    logger.info("[URL_SHORTENER_LOG] %s: %s", event_name, body, extra={"event_name": event_name})


def _jsonable(value):
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
