import logging

from django.core.exceptions import PermissionDenied
from django.db import transaction
from django.utils import timezone

from ledger.exceptions import AlreadyProcessed
from ledger.models import LedgerEntry, Wallet, Withdrawal
from ledger.services import notify, references
from ledger.services.ledger import LedgerService, retry_on_store_error

logger = logging.getLogger(__name__)


class WithdrawalService:
    """
    Handles the withdrawal request / approval workflow.

    Request: the coins are debited and a PENDING withdrawal is created in
    the same transaction.
    Approve: the withdrawal becomes APPROVED; the coins stay debited.
    Reject: the withdrawal becomes REJECTED and the coins are credited back.
    The withdrawal row is locked with select_for_update() for every
    transition, so a withdrawal is resolved exactly once.
    """

    @staticmethod
    @retry_on_store_error
    @transaction.atomic
    def request(
        user_id, amount: int, payment_method: str, payment_details: dict = None
    ) -> Withdrawal:
        """
        Create a PENDING withdrawal and take the coins out of the wallet.

        Raises:
            Wallet.DoesNotExist: If the user has no wallet.
            ValueError: If amount is not positive.
            InsufficientFunds: If the balance is below amount.
        """
        if amount <= 0:
            raise ValueError("Withdrawal amount must be positive.")

        wallet = Wallet.objects.select_for_update().get(user_id=user_id)
        withdrawal = Withdrawal.objects.create(
            wallet=wallet,
            amount=amount,
            payment_method=payment_method,
            payment_details=payment_details or {},
        )
        LedgerService.apply_entry(
            user_id,
            LedgerEntry.EntryType.WITHDRAWAL_REQUEST,
            -amount,
            references.withdrawal(withdrawal.pk),
            metadata={"withdrawal_id": withdrawal.pk},
        )

        logger.info(
            "Withdrawal requested: wallet=%s amount=%d withdrawal=%d",
            wallet.uuid,
            amount,
            withdrawal.pk,
        )
        notify.emit(
            "withdrawal.requested",
            {"withdrawal_id": withdrawal.pk, "user_id": user_id, "amount": amount},
        )
        return withdrawal

    @staticmethod
    @retry_on_store_error
    @transaction.atomic
    def approve(withdrawal_id: int, admin=None) -> Withdrawal:
        """
        Approve a PENDING withdrawal. The coins were debited at request time.

        Raises:
            Withdrawal.DoesNotExist: Unknown withdrawal.
            AlreadyProcessed: If it is no longer PENDING.
        """
        withdrawal = WithdrawalService._lock_pending(withdrawal_id)
        WithdrawalService._resolve(withdrawal, Withdrawal.Status.APPROVED, admin)
        return withdrawal

    @staticmethod
    @retry_on_store_error
    @transaction.atomic
    def reject(withdrawal_id: int, admin=None, reason: str = "") -> Withdrawal:
        """
        Reject a PENDING withdrawal and credit the coins back.

        Raises:
            Withdrawal.DoesNotExist: Unknown withdrawal.
            AlreadyProcessed: If it is no longer PENDING.
        """
        withdrawal = WithdrawalService._lock_pending(withdrawal_id)
        LedgerService.apply_entry_once(
            withdrawal.wallet.user_id,
            LedgerEntry.EntryType.WITHDRAWAL_HOLD_RELEASE,
            withdrawal.amount,
            withdrawal.reference,
            metadata={"withdrawal_id": withdrawal.pk, "reason": reason},
        )
        withdrawal.rejection_reason = reason or ""
        WithdrawalService._resolve(withdrawal, Withdrawal.Status.REJECTED, admin)
        return withdrawal

    @staticmethod
    @retry_on_store_error
    @transaction.atomic
    def cancel(withdrawal_id: int, user_id) -> int:
        """
        Delete the requester's own PENDING withdrawal, returning the coins.

        Returns:
            The amount credited back.

        Raises:
            Withdrawal.DoesNotExist: Unknown withdrawal.
            PermissionDenied: If `user_id` did not request it.
            AlreadyProcessed: If it is no longer PENDING.
        """
        withdrawal = WithdrawalService._lock_pending(withdrawal_id)
        if withdrawal.wallet.user_id != user_id:
            raise PermissionDenied("Only the requester can cancel a withdrawal.")

        LedgerService.apply_entry_once(
            user_id,
            LedgerEntry.EntryType.WITHDRAWAL_HOLD_RELEASE,
            withdrawal.amount,
            withdrawal.reference,
            metadata={"withdrawal_id": withdrawal.pk, "reason": "cancelled"},
        )
        amount = withdrawal.amount
        withdrawal.delete()

        logger.info(
            "Withdrawal cancelled: withdrawal=%d user=%s amount=%d",
            withdrawal_id,
            user_id,
            amount,
        )
        notify.emit(
            "withdrawal.cancelled",
            {"withdrawal_id": withdrawal_id, "user_id": user_id, "amount": amount},
        )
        return amount

    @staticmethod
    def _lock_pending(withdrawal_id: int) -> Withdrawal:
        withdrawal = (
            Withdrawal.objects.select_for_update()
            .select_related("wallet")
            .get(pk=withdrawal_id)
        )
        if not withdrawal.is_pending:
            raise AlreadyProcessed(f"Withdrawal already {withdrawal.status}.")
        return withdrawal

    @staticmethod
    def _resolve(withdrawal: Withdrawal, status: str, admin):
        withdrawal.status = status
        withdrawal.processed_at = timezone.now()
        withdrawal.processed_by = admin
        withdrawal.save(
            update_fields=[
                "status",
                "processed_at",
                "processed_by",
                "rejection_reason",
                "updated_at",
            ]
        )

        logger.info(
            "Withdrawal %s: withdrawal=%d amount=%d admin=%s",
            status,
            withdrawal.pk,
            withdrawal.amount,
            getattr(admin, "pk", None),
        )
        notify.emit(
            f"withdrawal.{status}",
            {
                "withdrawal_id": withdrawal.pk,
                "user_id": withdrawal.wallet.user_id,
                "amount": withdrawal.amount,
                "processed_by": getattr(admin, "pk", None),
            },
        )
