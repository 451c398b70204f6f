from django.conf import settings
from django.db.models.signals import post_save
from django.dispatch import receiver

from .partitions import provision_default_partitions


@receiver(post_save, sender=settings.AUTH_USER_MODEL)
def provision_new_user(sender, instance, created, raw=False, **kwargs):
    # Fixture loading (raw) brings its own partition rows
    if created and not raw:
        provision_default_partitions(instance.pk)
