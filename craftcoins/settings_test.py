import dj_database_url
from decouple import config

from craftcoins.settings import *  # noqa: F401,F403

# In-memory SQLite by default. Point TEST_DATABASE_URL at PostgreSQL to run
# the row-locking concurrency tests.
DATABASES = {
    "default": dj_database_url.parse(config("TEST_DATABASE_URL", default="sqlite://:memory:"))
}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "craftcoins-tests",
    }
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

CELERY_TASK_ALWAYS_EAGER = True
CELERY_BROKER_URL = "memory://"

LEDGER_STORE_RETRY_BACKOFF = 0
AUDIT_WEBHOOK_URL = ""
TRUSTED_PROXY_COUNT = 0
