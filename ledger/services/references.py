"""Deterministic idempotency references, one per real-world event."""

import uuid


def referral_applied(referrer_id) -> str:
    return f"referral_applied_{referrer_id}"


def referral_bonus(new_user_id) -> str:
    return f"referral_bonus_{new_user_id}"


def quiz_reward(quiz_id, user_id) -> str:
    return f"quiz_reward_{quiz_id}_{user_id}"


def order(transaction_id) -> str:
    return f"order_{transaction_id}"


def withdrawal(withdrawal_id) -> str:
    return f"withdrawal_{withdrawal_id}"


def admin_adjustment() -> str:
    """Reference for a one-off interactive adjustment with no caller key."""
    return f"admin_{uuid.uuid4().hex}"
