import logging

from django.core.cache import cache

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """
    A named slice of Django's cache with a fixed time-to-live.

    Values expire on their own after `ttl` seconds; the services that mutate
    the underlying data call `invalidate()` so readers never wait a full TTL
    to see a change.
    """

    def __init__(self, namespace: str, ttl: int):
        self.namespace = namespace
        self.ttl = ttl

    def key(self, name) -> str:
        return f"{self.namespace}:{name}"

    def get_or_set(self, name, loader):
        key = self.key(name)
        value = cache.get(key, _MISSING)
        if value is _MISSING:
            value = loader()
            cache.set(key, value, self.ttl)
        return value

    def invalidate(self, name):
        cache.delete(self.key(name))
        logger.debug("Cache invalidated: key=%s", self.key(name))
