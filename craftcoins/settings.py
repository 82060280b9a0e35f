# craftcoins/settings.py
from pathlib import Path

import dj_database_url
from celery.schedules import crontab
from decouple import Csv, config

BASE_DIR = Path(__file__).resolve().parent.parent

# -------------------------------------------------------------------
# Core / Environment
# -------------------------------------------------------------------
ENV = config("ENV", default="development")  # "development" | "production" | "staging"
DEBUG = config("DEBUG", default=(ENV != "production"), cast=bool)
SECRET_KEY = config("SECRET_KEY", default="django-insecure-craftcoins-dev-key")

ALLOWED_HOSTS = config("ALLOWED_HOSTS", cast=Csv(), default="localhost,127.0.0.1")

# -------------------------------------------------------------------
# Installed Apps
# -------------------------------------------------------------------
INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "ledger.apps.LedgerConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
    "ledger.middleware.ClientAddressMiddleware",
]

ROOT_URLCONF = "craftcoins.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "craftcoins.wsgi.application"

# -------------------------------------------------------------------
# Database (DATABASE_URL; row locking needs PostgreSQL in production)
# -------------------------------------------------------------------
DATABASES = {
    "default": dj_database_url.config(
        default=config("DATABASE_URL", default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}"),
        conn_max_age=600,
        ssl_require=config("DB_SSL_REQUIRE", default=False, cast=bool),
    )
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# -------------------------------------------------------------------
# Cache (settings and cart counts are cached with a TTL)
# -------------------------------------------------------------------
CACHES = {
    "default": {
        "BACKEND": config(
            "CACHE_BACKEND", default="django.core.cache.backends.locmem.LocMemCache"
        ),
        "LOCATION": config("CACHE_LOCATION", default="craftcoins"),
    }
}

# -------------------------------------------------------------------
# DRF
# -------------------------------------------------------------------
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": (
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ),
    "DEFAULT_PERMISSION_CLASSES": ("rest_framework.permissions.IsAuthenticated",),
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.PageNumberPagination",
    "PAGE_SIZE": 25,
}

# -------------------------------------------------------------------
# Celery
# -------------------------------------------------------------------
CELERY_BROKER_URL = config("CELERY_BROKER_URL", default="redis://localhost:6379/0")
CELERY_RESULT_BACKEND = config("CELERY_RESULT_BACKEND", default=None)
CELERY_TASK_ALWAYS_EAGER = config("CELERY_TASK_ALWAYS_EAGER", default=False, cast=bool)
CELERY_TASK_ACKS_LATE = True
CELERY_BEAT_SCHEDULE = {
    "purge-expired-rate-limits": {
        "task": "ledger.tasks.purge_expired_rate_limits",
        "schedule": crontab(minute=0),
    },
    "reconcile-wallet-balances": {
        "task": "ledger.tasks.reconcile_wallet_balances",
        "schedule": crontab(minute=30, hour=3),
    },
}

# -------------------------------------------------------------------
# Ledger
# -------------------------------------------------------------------
LEDGER_STORE_MAX_RETRIES = config("LEDGER_STORE_MAX_RETRIES", default=3, cast=int)
LEDGER_STORE_RETRY_BACKOFF = config("LEDGER_STORE_RETRY_BACKOFF", default=0.05, cast=float)
DEFAULT_REFERRAL_COIN_REWARD = config("DEFAULT_REFERRAL_COIN_REWARD", default=1, cast=int)

# action class -> (window_seconds, max_attempts)
ABUSE_GUARD_RULES = {
    "referral_apply": (24 * 60 * 60, 1),
    "password_reset": (60 * 60, 3),
    "vote": (5 * 60, 1),
}

SETTINGS_CACHE_TTL = config("SETTINGS_CACHE_TTL", default=300, cast=int)
CART_COUNT_CACHE_TTL = config("CART_COUNT_CACHE_TTL", default=60, cast=int)

AUDIT_WEBHOOK_URL = config("AUDIT_WEBHOOK_URL", default="")
AUDIT_WEBHOOK_TIMEOUT = config("AUDIT_WEBHOOK_TIMEOUT", default=5, cast=int)

# Reverse proxies in front of the app. X-Forwarded-For is ignored when 0.
TRUSTED_PROXY_COUNT = config("TRUSTED_PROXY_COUNT", default=0, cast=int)

# -------------------------------------------------------------------
# Logging
# -------------------------------------------------------------------
LOG_LEVEL = config("LOG_LEVEL", default="DEBUG" if DEBUG else "INFO")
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "app": {
            "format": "[{levelname}] {asctime} {name} - {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "app",
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "django.db.backends": {"level": "WARNING"},
        "django.request": {"level": "WARNING"},
    },
}
