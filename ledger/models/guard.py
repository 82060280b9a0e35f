from django.db import models


class RateLimitBucket(models.Model):
    """
    Fixed-window attempt counter for one (actor, action class) pair.

    There is a single row per pair; the window is reset in place when it
    has elapsed, and stale rows are purged periodically.
    """

    actor_key = models.CharField(max_length=255)
    action_class = models.CharField(max_length=50)
    window_started_at = models.DateTimeField()
    attempts = models.PositiveIntegerField(default=0)
    last_attempt_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["actor_key", "action_class"],
                name="uniq_rate_limit_bucket",
            ),
        ]
        indexes = [
            models.Index(fields=["last_attempt_at"], name="idx_bucket_last_attempt"),
        ]

    def __str__(self):
        return f"{self.action_class}:{self.actor_key} ({self.attempts})"
