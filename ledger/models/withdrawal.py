from django.conf import settings
from django.db import models

from ledger.models.base import BaseModel
from ledger.models.wallet import Wallet


class Withdrawal(BaseModel):
    """
    A user's request to pay coins out.

    The coins leave the wallet when the request is made. An admin then
    approves it (coins stay gone) or rejects it (coins are credited back).
    Once approved or rejected the row is never modified again.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPROVED = "approved", "Approved"
        REJECTED = "rejected", "Rejected"

    wallet = models.ForeignKey(
        Wallet,
        on_delete=models.PROTECT,
        related_name="withdrawals",
    )
    amount = models.PositiveBigIntegerField()
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.PENDING,
    )
    payment_method = models.CharField(max_length=50)
    payment_details = models.JSONField(default=dict, blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    processed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    rejection_reason = models.TextField(blank=True)

    class Meta(BaseModel.Meta):
        indexes = [
            models.Index(fields=["wallet", "status"], name="idx_withdrawal_wallet_status"),
            models.Index(fields=["status", "created_at"], name="idx_withdrawal_status_created"),
        ]

    def __str__(self):
        return f"Withdrawal {self.id} | {self.amount} | {self.status}"

    @property
    def reference(self):
        return f"withdrawal_{self.pk}"

    @property
    def is_pending(self):
        return self.status == self.Status.PENDING
