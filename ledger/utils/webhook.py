import logging

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


def post_audit_event(event: str, payload: dict) -> dict:
    """
    Deliver one audit event to the admin webhook.

    Handles both HTTP errors (non-2xx responses) and network failures
    (connection errors, timeouts) and returns a structured result dict
    for consistent downstream handling.

    Args:
        event: Event name, e.g. "ledger.entry_applied".
        payload: JSON-serialisable event body.

    Returns:
        dict with keys:
            - success (bool): Whether the webhook accepted the event.
            - response (dict): Status code or error details.
    """
    url = settings.AUDIT_WEBHOOK_URL
    if not url:
        logger.info("Audit event (no webhook configured): event=%s payload=%s", event, payload)
        return {"success": True, "response": {"delivered": False}}

    try:
        response = requests.post(
            url,
            json={"event": event, "payload": payload},
            timeout=settings.AUDIT_WEBHOOK_TIMEOUT,
        )

        if response.ok:
            logger.info("Audit event delivered: event=%s status=%d", event, response.status_code)
            return {"success": True, "response": {"status": response.status_code}}

        logger.warning(
            "Audit webhook rejected event: event=%s status=%d body=%s",
            event,
            response.status_code,
            response.text[:500],
        )
        return {"success": False, "response": {"status": response.status_code}}

    except requests.exceptions.Timeout as exc:
        logger.error("Audit webhook timeout: event=%s error=%s", event, str(exc))
        return {"success": False, "response": {"error": "timeout", "detail": str(exc)}}

    except requests.exceptions.RequestException as exc:
        logger.error("Audit webhook request error: event=%s error=%s", event, str(exc))
        return {"success": False, "response": {"error": "request_error", "detail": str(exc)}}
