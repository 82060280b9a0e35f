from django.apps import AppConfig


class LedgerConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "ledger"
    verbose_name = "Coin ledger"

    def ready(self):
        from ledger import signals  # noqa: F401
