from django.db import models

from ledger.models.base import BaseModel


class Setting(BaseModel):
    """Admin-tunable configuration value, e.g. `referral_coin_reward`."""

    key = models.CharField(max_length=100, unique=True)
    value = models.JSONField()

    class Meta(BaseModel.Meta):
        ordering = ["key"]

    def __str__(self):
        return f"{self.key}={self.value!r}"
