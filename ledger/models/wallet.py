import secrets
import uuid

from django.conf import settings
from django.db import models

from ledger.models.base import BaseModel


def generate_referral_code(name: str) -> str:
    """Three letters of the owner's name followed by four random hex digits."""
    prefix = "".join(ch for ch in (name or "") if ch.isalnum())[:3].upper() or "USR"
    return f"{prefix}{secrets.token_hex(2).upper()}"


class Wallet(BaseModel):
    """
    A user's coin balance.

    `balance` is a materialized view of the wallet's ledger entries and is
    only ever changed by LedgerService, which locks the row with
    select_for_update() and applies a conditional F() update. The database
    check constraint is the last line against a negative balance.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="wallet",
    )
    uuid = models.UUIDField(
        default=uuid.uuid4, unique=True, editable=False, db_index=True
    )
    balance = models.BigIntegerField(default=0)
    referral_code = models.CharField(max_length=16, unique=True)
    referral_count = models.PositiveIntegerField(default=0)

    class Meta(BaseModel.Meta):
        constraints = [
            models.CheckConstraint(
                condition=models.Q(balance__gte=0),
                name="wallet_balance_non_negative",
            ),
        ]

    def __str__(self):
        return f"Wallet {self.uuid} (user={self.user_id}, balance={self.balance})"

    def save(self, *args, **kwargs):
        if not self.referral_code:
            self.referral_code = self.unique_referral_code(self.user.get_username())
        super().save(*args, **kwargs)

    @classmethod
    def unique_referral_code(cls, name: str) -> str:
        code = generate_referral_code(name)
        while cls.objects.filter(referral_code=code).exists():
            code = generate_referral_code(name)
        return code
