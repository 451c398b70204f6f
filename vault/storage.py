"""
Object storage for uploaded file bodies, backed by Django's storage API.

``presign`` issues a signed, expiring download URL that works without a
bearer token; ``resolve_presigned`` checks one and returns the object key.
"""

import logging
import time
import uuid
from dataclasses import dataclass

from django.conf import settings
from django.core import signing
from django.core.files.storage import default_storage
from django.urls import reverse

from .exceptions import NotFound

logger = logging.getLogger(__name__)

PRESIGN_SALT = 'vault.storage.presign'


@dataclass(frozen=True)
class StoredObject:
    key: str
    url: str


class ObjectStore:

    def __init__(self, storage=None):
        self._storage = storage

    @property
    def storage(self):
        # Resolved lazily so settings overrides (tests) are honoured
        return self._storage or default_storage

    def make_key(self, user_id, filename):
        return f"files/{user_id}/{uuid.uuid4().hex}/{self.storage.get_valid_name(filename)}"

    def upload(self, content, key):
        saved_key = self.storage.save(key, content)
        try:
            url = self.storage.url(saved_key)
        except NotImplementedError:
            url = ''
        logger.debug("Stored object %s", saved_key)
        return StoredObject(key=saved_key, url=url)

    def open(self, key):
        return self.storage.open(key)

    def exists(self, key):
        return self.storage.exists(key)

    def delete(self, key):
        """Remove an object. Returns False (and logs) instead of raising."""
        try:
            if self.storage.exists(key):
                self.storage.delete(key)
            return True
        except Exception:
            logger.exception("Failed to delete stored object %s", key)
            return False

    def presign(self, key, ttl=None):
        ttl = settings.VAULT_PRESIGNED_URL_TTL if ttl is None else ttl
        token = signing.dumps({'key': key, 'exp': int(time.time()) + int(ttl)}, salt=PRESIGN_SALT)
        return reverse('file_signed_download', kwargs={'token': token})

    def resolve_presigned(self, token):
        try:
            payload = signing.loads(token, salt=PRESIGN_SALT)
        except signing.BadSignature:
            raise NotFound('Invalid download link')
        if payload.get('exp', 0) < time.time():
            raise NotFound('Download link has expired')
        return payload['key']


object_store = ObjectStore()
