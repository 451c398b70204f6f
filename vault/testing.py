"""
Helpers shared by the test modules.
"""

import shutil
import tempfile
import uuid

from django.contrib.auth import get_user_model
from django.test import override_settings
from rest_framework_simplejwt.tokens import RefreshToken

from .models import File, StoragePartition

GB = 1024 * 1024 * 1024


def create_user(username, password='testpass123', **extra):
    return get_user_model().objects.create_user(
        username=username,
        email=f'{username}@example.com',
        password=password,
        **extra
    )


def access_token_for(user):
    return str(RefreshToken.for_user(user).access_token)


def make_partition(user, name, quota, used=0):
    return StoragePartition.objects.create(user=user, name=name, quota=quota, used=used)


def set_used(user, name, used):
    StoragePartition.objects.filter(user=user, name=name).update(used=used)


def partition_of(user, name):
    return StoragePartition.objects.get(user=user, name=name)


def make_file(user, partition='personal', size=100, deleted=False, mime_type='text/plain', name=None):
    """Create a File row directly, without touching storage."""
    name = name or f'{uuid.uuid4().hex[:8]}.txt'
    return File.objects.create(
        user=user,
        filename=name,
        original_filename=name,
        mime_type=mime_type,
        size=size,
        partition=partition,
        is_deleted=deleted,
        storage_key=f'files/{user.id}/{uuid.uuid4().hex}/{name}',
    )


class TemporaryMediaMixin:
    """Point MEDIA_ROOT at a throwaway directory for the test class."""

    @classmethod
    def setUpClass(cls):
        cls._media_root = tempfile.mkdtemp(prefix='vault-test-media-')
        cls._media_override = override_settings(MEDIA_ROOT=cls._media_root)
        cls._media_override.enable()
        super().setUpClass()

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        cls._media_override.disable()
        shutil.rmtree(cls._media_root, ignore_errors=True)
