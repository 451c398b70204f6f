from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.db import models


DEFAULT_PARTITION = 'personal'
DEFAULT_PARTITION_NAMES = ('personal', 'work')


class User(AbstractUser):
    email = models.EmailField(unique=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    # False until the default partitions have been created for this account
    partitions_provisioned = models.BooleanField(default=False)

    def __str__(self):
        return self.username


class StoragePartition(models.Model):
    """
    A named, quota-bounded bucket of a user's files.

    ``used`` is a running counter kept in step with uploads, deletes and moves.
    It is reconciled against the files table on demand, so it may briefly
    drift from the true total.
    """
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='storage_partitions')
    name = models.CharField(max_length=50)
    quota = models.BigIntegerField()
    used = models.BigIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'storage_partitions'
        ordering = ['created_at', 'id']
        constraints = [
            models.UniqueConstraint(fields=['user', 'name'], name='unique_user_partition_name'),
            models.CheckConstraint(condition=models.Q(quota__gte=0), name='partition_quota_non_negative'),
            models.CheckConstraint(condition=models.Q(used__gte=0), name='partition_used_non_negative'),
        ]

    @property
    def available(self):
        return max(0, self.quota - self.used)

    @property
    def is_default(self):
        return self.name in DEFAULT_PARTITION_NAMES

    def __str__(self):
        return f"{self.user_id}:{self.name} ({self.used}/{self.quota} bytes)"


class File(models.Model):
    """
    A single uploaded file. ``partition`` names one of the owner's
    StoragePartition rows; it is not a foreign key, so it can dangle after a
    partition is removed.
    """
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='files')
    filename = models.CharField(max_length=255)
    original_filename = models.CharField(max_length=255)
    mime_type = models.CharField(max_length=255, blank=True, null=True)
    size = models.BigIntegerField()
    checksum = models.CharField(max_length=64, blank=True, default='')
    partition = models.CharField(max_length=50, default=DEFAULT_PARTITION)
    is_public = models.BooleanField(default=False)
    tags = models.JSONField(default=list, blank=True)
    is_deleted = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(blank=True, null=True)
    storage_key = models.TextField()
    storage_url = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'files'
        constraints = [
            models.CheckConstraint(condition=models.Q(size__gte=0), name='file_size_non_negative'),
        ]
        indexes = [
            models.Index(fields=['user', 'is_deleted'], name='files_user_deleted_idx'),
            models.Index(fields=['user', 'partition', 'is_deleted'], name='files_user_partition_idx'),
            models.Index(fields=['mime_type'], name='files_mime_type_idx'),
            models.Index(fields=['original_filename'], name='files_original_name_idx'),
        ]

    def __str__(self):
        return f"{self.user_id}: {self.original_filename} [{self.partition}]"
