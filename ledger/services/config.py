import logging

from django.conf import settings

from ledger.cache import TTLCache
from ledger.models import Setting

logger = logging.getLogger(__name__)

REFERRAL_COIN_REWARD = "referral_coin_reward"

_settings_cache = TTLCache("ledger-settings", getattr(settings, "SETTINGS_CACHE_TTL", 300))


def _load(key):
    setting = Setting.objects.filter(key=key).first()
    return None if setting is None else setting.value


def get_setting(key: str, default=None):
    """Read a configuration value through the settings cache."""
    value = _settings_cache.get_or_set(key, lambda: _load(key))
    return default if value is None else value


def set_setting(key: str, value) -> Setting:
    setting, _ = Setting.objects.update_or_create(key=key, defaults={"value": value})
    invalidate_setting(key)
    return setting


def invalidate_setting(key: str):
    _settings_cache.invalidate(key)


def referral_coin_reward() -> int:
    """
    The coins credited to each side of a referral.

    Falls back to DEFAULT_REFERRAL_COIN_REWARD when the stored value is
    missing or is not a non-negative integer.
    """
    default = settings.DEFAULT_REFERRAL_COIN_REWARD
    value = get_setting(REFERRAL_COIN_REWARD, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        logger.warning("Ignoring invalid %s setting: %r", REFERRAL_COIN_REWARD, value)
        return default
    return value


def rate_limit_rule(action_class: str):
    """Return (window_seconds, max_attempts) for an action class."""
    window_seconds, max_attempts = settings.ABUSE_GUARD_RULES[action_class]
    override = get_setting(f"rate_limit:{action_class}")
    if isinstance(override, dict):
        window_seconds = int(override.get("window_seconds", window_seconds))
        max_attempts = int(override.get("max_attempts", max_attempts))
    return window_seconds, max_attempts
