import logging

from celery import shared_task

from ledger.services import AbuseGuard, LedgerService
from ledger.utils import post_audit_event

logger = logging.getLogger(__name__)


@shared_task(bind=True, acks_late=True, max_retries=5, default_retry_delay=30)
def publish_ledger_event(self, event: str, payload: dict):
    """
    Push one audit event to the admin sink.

    Queued after the ledger transaction commits; a failed delivery is
    retried with exponential backoff and never touches the ledger.
    """
    result = post_audit_event(event, payload)
    if not result["success"]:
        logger.warning(
            "Audit event delivery failed: event=%s attempt=%d response=%s",
            event,
            self.request.retries + 1,
            result["response"],
        )
        raise self.retry(countdown=2**self.request.retries * 10)

    return {"event": event, "delivered": result["response"]}


@shared_task
def purge_expired_rate_limits():
    """
    Periodic task: drop rate limit buckets whose window is long over.

    Runs via Celery Beat; keeps the bucket table bounded.
    """
    deleted = AbuseGuard.purge_expired()
    return {"deleted": deleted}


@shared_task
def reconcile_wallet_balances():
    """
    Periodic task: report wallets whose balance differs from their ledger sum.

    Drift is only reported here; fixing it is an operator decision
    (see the reconcile_balances management command).
    """
    drifted = list(LedgerService.find_drift())
    for wallet in drifted:
        logger.error(
            "Wallet balance drift: wallet=%s balance=%d ledger_sum=%d",
            wallet.uuid,
            wallet.balance,
            wallet.ledger_sum,
        )

    if drifted:
        logger.error("Found %d wallet(s) with balance drift.", len(drifted))
    return {"drifted": [str(wallet.uuid) for wallet in drifted]}
