from django.db import models


class BaseModel(models.Model):
    """
    Abstract base model providing common timestamp fields.

    Every concrete ledger model inherits from this so creation and
    modification times are tracked the same way across wallets, entries,
    orders and withdrawals.
    """

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True
        ordering = ["-created_at"]
