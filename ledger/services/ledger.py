import functools
import logging
import time

from django.conf import settings
from django.db import IntegrityError, InterfaceError, OperationalError, transaction
from django.db.models import F, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from ledger.exceptions import DuplicateReference, InsufficientFunds, StoreUnavailable
from ledger.models import LedgerEntry, Wallet
from ledger.services import notify

logger = logging.getLogger(__name__)


def retry_on_store_error(func):
    """
    Retry a ledger unit-of-work on transient database failures.

    Every ledger mutation is keyed by an idempotency reference, so running
    the whole unit again is safe. Only the outermost call retries: inside an
    open atomic block the error propagates so the enclosing unit is retried
    as a whole. After LEDGER_STORE_MAX_RETRIES the failure surfaces as
    StoreUnavailable.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if transaction.get_connection().in_atomic_block:
            return func(*args, **kwargs)

        max_retries = settings.LEDGER_STORE_MAX_RETRIES
        backoff = settings.LEDGER_STORE_RETRY_BACKOFF
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except (OperationalError, InterfaceError) as exc:
                attempt += 1
                if attempt > max_retries:
                    logger.error(
                        "Ledger store unavailable: op=%s attempts=%d error=%s",
                        func.__qualname__,
                        attempt,
                        str(exc),
                    )
                    raise StoreUnavailable() from exc

                delay = backoff * 2 ** (attempt - 1)
                logger.warning(
                    "Transient ledger store error: op=%s attempt=%d retry_in=%.2fs error=%s",
                    func.__qualname__,
                    attempt,
                    delay,
                    str(exc),
                )
                transaction.get_connection().close_if_unusable_or_obsolete()
                time.sleep(delay)

    return wrapper


class LedgerService:
    """
    The only write path for wallet balances.

    Each entry is applied in one atomic block: the wallet row is locked with
    select_for_update(), the balance is moved with a conditional F() update
    that can never take it below zero, and the entry row is inserted. Either
    both writes commit or neither does.
    """

    @staticmethod
    @retry_on_store_error
    @transaction.atomic
    def apply_entry(
        user_id, entry_type: str, amount: int, reference: str, metadata: dict = None
    ) -> LedgerEntry:
        """
        Apply one signed balance change to the user's wallet.

        Args:
            user_id: Owner of the wallet.
            entry_type: One of LedgerEntry.EntryType.
            amount: Non-zero integer; positive credits, negative debits.
            reference: Idempotency reference, unique per (wallet, entry_type).
            metadata: Optional JSON-serialisable context stored on the entry.

        Returns:
            The new LedgerEntry. `entry.balance_after` is the new balance.

        Raises:
            Wallet.DoesNotExist: If the user has no wallet.
            ValueError: If amount is zero or not an integer, or reference is empty.
            DuplicateReference: If the reference was already applied.
            InsufficientFunds: If a debit would make the balance negative.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise ValueError("Ledger amount must be a non-zero integer.")
        if not reference:
            raise ValueError("Ledger reference is required.")

        wallet = Wallet.objects.select_for_update().get(user_id=user_id)

        existing = LedgerEntry.objects.filter(
            wallet=wallet, entry_type=entry_type, reference=reference
        ).first()
        if existing:
            raise DuplicateReference(entry=existing)

        if amount < 0 and wallet.balance + amount < 0:
            raise InsufficientFunds(balance=wallet.balance, required=-amount)

        # Conditional update: the filter expresses the invariant directly.
        balance_qs = Wallet.objects.filter(pk=wallet.pk)
        if amount < 0:
            balance_qs = balance_qs.filter(balance__gte=-amount)
        updated = balance_qs.update(
            balance=F("balance") + amount, updated_at=timezone.now()
        )
        if updated != 1:
            wallet.refresh_from_db(fields=["balance"])
            raise InsufficientFunds(balance=wallet.balance, required=-amount)
        wallet.refresh_from_db(fields=["balance"])

        try:
            with transaction.atomic():
                entry = LedgerEntry.objects.create(
                    wallet=wallet,
                    entry_type=entry_type,
                    amount=amount,
                    reference=reference,
                    balance_after=wallet.balance,
                    metadata=metadata or {},
                )
        except IntegrityError:
            existing = LedgerEntry.objects.filter(
                wallet=wallet, entry_type=entry_type, reference=reference
            ).first()
            raise DuplicateReference(entry=existing)

        logger.info(
            "Ledger entry applied: wallet=%s type=%s amount=%d new_balance=%d "
            "entry=%d reference=%s",
            wallet.uuid,
            entry_type,
            amount,
            wallet.balance,
            entry.id,
            reference,
        )
        notify.emit(
            "ledger.entry_applied",
            {
                "user_id": wallet.user_id,
                "entry_id": entry.id,
                "entry_type": entry_type,
                "amount": amount,
                "balance_after": entry.balance_after,
                "reference": reference,
            },
        )
        return entry

    @staticmethod
    def apply_entry_once(
        user_id, entry_type: str, amount: int, reference: str, metadata: dict = None
    ):
        """
        Like apply_entry, but an already-applied reference is a success.

        Returns:
            (entry, created). On a duplicate, `entry` is the stored entry and
            `created` is False; the balance is untouched.
        """
        try:
            entry = LedgerService.apply_entry(
                user_id, entry_type, amount, reference, metadata=metadata
            )
        except DuplicateReference as exc:
            logger.info(
                "Ledger entry already applied: user=%s type=%s reference=%s",
                user_id,
                entry_type,
                reference,
            )
            return exc.entry, False
        return entry, True

    @staticmethod
    def get_wallet(user_id) -> Wallet:
        return Wallet.objects.get(user_id=user_id)

    @staticmethod
    def get_balance(user_id) -> int:
        return Wallet.objects.values_list("balance", flat=True).get(user_id=user_id)

    @staticmethod
    def history(user_id, entry_type: str = None):
        """Entries for the user's wallet, newest first."""
        queryset = LedgerEntry.objects.filter(wallet__user_id=user_id)
        if entry_type:
            queryset = queryset.filter(entry_type=entry_type)
        return queryset

    @staticmethod
    def ledger_sum(wallet) -> int:
        return wallet.entries.aggregate(total=Coalesce(Sum("amount"), Value(0)))["total"]

    @staticmethod
    def find_drift():
        """Wallets whose cached balance differs from the sum of their entries."""
        return (
            Wallet.objects.annotate(
                ledger_sum=Coalesce(Sum("entries__amount"), Value(0))
            )
            .exclude(balance=F("ledger_sum"))
            .order_by("pk")
        )
