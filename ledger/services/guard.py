import logging
import math
from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from ledger.exceptions import RateLimited
from ledger.models import RateLimitBucket
from ledger.services.config import rate_limit_rule

logger = logging.getLogger(__name__)

REFERRAL_APPLY = "referral_apply"

# Action classes enforced by the auth (password reset, keyed by account email)
# and content (vote, keyed by vote_actor_key) components through
# AbuseGuard.enforce. Their rules live in ABUSE_GUARD_RULES with the rest.
PASSWORD_RESET = "password_reset"
VOTE = "vote"


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    retry_after: int = 0


def vote_actor_key(user_id, target_id) -> str:
    """One cooldown per (voter, target) pair."""
    return f"{user_id}:{target_id}"


class AbuseGuard:
    """
    Limits how often an actor may perform a class of action.

    Counts live in one RateLimitBucket row per (actor_key, action_class).
    The row is locked while it is checked and bumped, so concurrent requests
    from the same actor are counted one after another. Called inside a
    larger unit-of-work, the recorded attempt commits or rolls back with it,
    which makes the limit count only successful actions.
    """

    @staticmethod
    @transaction.atomic
    def check_and_record(
        actor_key: str,
        action_class: str,
        window_seconds: int = None,
        max_attempts: int = None,
    ) -> GuardDecision:
        """
        Record one attempt if the actor is still within its allowance.

        Window and maximum default to the configured rule for the action
        class. A denied attempt is not recorded.
        """
        if window_seconds is None or max_attempts is None:
            default_window, default_max = rate_limit_rule(action_class)
            window_seconds = default_window if window_seconds is None else window_seconds
            max_attempts = default_max if max_attempts is None else max_attempts

        now = timezone.now()
        RateLimitBucket.objects.get_or_create(
            actor_key=actor_key,
            action_class=action_class,
            defaults={"window_started_at": now},
        )
        bucket = RateLimitBucket.objects.select_for_update().get(
            actor_key=actor_key, action_class=action_class
        )

        window_ends_at = bucket.window_started_at + timedelta(seconds=window_seconds)
        if now >= window_ends_at:
            bucket.window_started_at = now
            bucket.attempts = 0
            window_ends_at = now + timedelta(seconds=window_seconds)

        if bucket.attempts >= max_attempts:
            retry_after = max(1, math.ceil((window_ends_at - now).total_seconds()))
            logger.warning(
                "Rate limit reached: action=%s actor=%s attempts=%d retry_after=%ds",
                action_class,
                actor_key,
                bucket.attempts,
                retry_after,
            )
            return GuardDecision(allowed=False, retry_after=retry_after)

        bucket.attempts += 1
        bucket.last_attempt_at = now
        bucket.save(update_fields=["window_started_at", "attempts", "last_attempt_at"])
        return GuardDecision(allowed=True)

    @staticmethod
    def enforce(actor_key: str, action_class: str, **limits):
        """check_and_record, raising RateLimited when denied."""
        decision = AbuseGuard.check_and_record(actor_key, action_class, **limits)
        if not decision.allowed:
            raise RateLimited(retry_after=decision.retry_after)
        return decision

    @staticmethod
    def purge_expired(older_than: timedelta = None) -> int:
        """
        Delete buckets whose window has run out.

        Each configured action class is purged by its own window, including
        any `rate_limit:<action>` override, so a lengthened window is never
        cut short. Buckets of unconfigured classes use the longest window.
        `older_than` replaces every window when given.
        """
        now = timezone.now()
        windows = {
            action_class: timedelta(seconds=rate_limit_rule(action_class)[0])
            for action_class in settings.ABUSE_GUARD_RULES
        }
        if older_than is not None:
            windows = {action_class: older_than for action_class in windows}

        deleted = 0
        for action_class, window in windows.items():
            count, _ = RateLimitBucket.objects.filter(
                action_class=action_class, window_started_at__lt=now - window
            ).delete()
            deleted += count

        longest = older_than or max(windows.values(), default=timedelta(0))
        count, _ = (
            RateLimitBucket.objects.exclude(action_class__in=list(windows))
            .filter(window_started_at__lt=now - longest)
            .delete()
        )
        deleted += count

        if deleted:
            logger.info("Purged %d expired rate limit bucket(s).", deleted)
        return deleted
