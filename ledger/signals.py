from django.conf import settings
from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from ledger.models import Setting, Wallet
from ledger.services.config import invalidate_setting


@receiver(post_save, sender=settings.AUTH_USER_MODEL)
def create_wallet_for_user(sender, instance, created, **kwargs):
    if created:
        Wallet.objects.get_or_create(user=instance)


@receiver(post_save, sender=Setting)
@receiver(post_delete, sender=Setting)
def invalidate_cached_setting(sender, instance, **kwargs):
    invalidate_setting(instance.key)
