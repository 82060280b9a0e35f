from django.db import models

from ledger.models.base import BaseModel
from ledger.models.wallet import Wallet


class LedgerEntry(BaseModel):
    """
    An immutable record of one balance change.

    The sum of a wallet's entries is the wallet's balance. `amount` is signed
    (credit > 0, debit < 0) and `balance_after` snapshots the balance right
    after the entry was applied. `(wallet, entry_type, reference)` is unique,
    which is what makes one-time rewards and payments safe to retry.
    """

    class EntryType(models.TextChoices):
        REFERRAL_APPLIED = "referral_applied", "Referral applied"
        REFERRAL_BONUS = "referral_bonus", "Referral bonus"
        QUIZ_REWARD = "quiz_reward", "Quiz reward"
        STORE_PURCHASE = "store_purchase", "Store purchase"
        STORE_REFUND = "store_refund", "Store refund"
        WITHDRAWAL_REQUEST = "withdrawal_request", "Withdrawal request"
        WITHDRAWAL_HOLD_RELEASE = "withdrawal_hold_release", "Withdrawal hold release"
        ADMIN_ADJUSTMENT = "admin_adjustment", "Admin adjustment"
        FRAUD_PENALTY = "fraud_penalty", "Fraud penalty"

    wallet = models.ForeignKey(
        Wallet,
        on_delete=models.PROTECT,
        related_name="entries",
    )
    entry_type = models.CharField(max_length=32, choices=EntryType.choices)
    amount = models.BigIntegerField()
    reference = models.CharField(max_length=128)
    balance_after = models.BigIntegerField()
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["wallet", "entry_type", "reference"],
                name="uniq_entry_reference",
            ),
            models.CheckConstraint(
                condition=~models.Q(amount=0),
                name="entry_amount_non_zero",
            ),
        ]
        indexes = [
            models.Index(fields=["wallet", "created_at"], name="idx_entry_wallet_created"),
        ]
        verbose_name_plural = "ledger entries"

    def __str__(self):
        return (
            f"LedgerEntry {self.id} | {self.entry_type} | "
            f"{self.amount:+d} | {self.reference}"
        )

    @property
    def is_credit(self):
        return self.amount > 0
