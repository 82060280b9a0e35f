from django.db import models
from django.db.models import F, Q

from ledger.models.wallet import Wallet


class ReferralApplication(models.Model):
    """
    One successful use of a referrer's code by the applicant.

    Also the applicant-side idempotency record: a referrer can appear at most
    once per applicant.
    """

    applicant = models.ForeignKey(
        Wallet,
        on_delete=models.CASCADE,
        related_name="applied_referrals",
    )
    referrer = models.ForeignKey(
        Wallet,
        on_delete=models.CASCADE,
        related_name="referrals_given",
    )
    code_used = models.CharField(max_length=16)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    reward_amount = models.PositiveIntegerField(default=0)
    applied_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-applied_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["applicant", "referrer"],
                name="uniq_referral_per_referrer",
            ),
            models.CheckConstraint(
                condition=~Q(applicant=F("referrer")),
                name="referral_not_self",
            ),
        ]

    def __str__(self):
        return f"Referral {self.code_used}: {self.referrer_id} -> {self.applicant_id}"
