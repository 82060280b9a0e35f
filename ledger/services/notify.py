import logging

from django.db import transaction

logger = logging.getLogger(__name__)


def _enqueue(event: str, payload: dict):
    from ledger.tasks import publish_ledger_event

    try:
        publish_ledger_event.delay(event, payload)
    except Exception:
        # Enqueue failures stay out of the committed ledger operation.
        logger.exception("Failed to enqueue audit event=%s payload=%s", event, payload)


def emit(event: str, payload: dict):
    """
    Queue an audit event once the surrounding transaction commits.

    Nothing is sent for a transaction that rolls back.
    """
    transaction.on_commit(lambda: _enqueue(event, payload))
