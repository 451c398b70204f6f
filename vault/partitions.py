"""
Partition ledger: the per-user set of storage partitions and the only code
that writes their ``quota`` and ``used`` counters.

Every function takes a user id and re-reads the rows it needs, so no caller
works from a stale copy of a user's partitions.

Usage counters are bookkeeping. ``increment_used`` and ``decrement_used``
never raise. A failed update is logged and returned as a ``UsageUpdate``
with ``ok=False``, and the file operation that triggered it still succeeds.
The counter can drift as a result; ``reconciliation`` recomputes it from the
files table.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import DatabaseError, IntegrityError, models, transaction
from django.db.models import F
from django.db.models.functions import Greatest

from .exceptions import Conflict, InvalidArgument, LimitExceeded, NotFound, PartitionNotFound
from .models import DEFAULT_PARTITION_NAMES, StoragePartition

logger = logging.getLogger(__name__)

PARTITION_NAME_RE = re.compile(r'^[a-z0-9_-]+$')
MAX_PARTITION_NAME_LENGTH = 50
# Fixed routes under /api/partitions/ that would shadow a partition of the same name
RESERVED_PARTITION_NAMES = frozenset({'usage', 'move-files', 'reconcile'})


@dataclass
class UsageUpdate:
    """Outcome of a best-effort counter update."""
    partition: str
    delta: int
    used: Optional[int] = None
    error: Optional[Exception] = None

    @property
    def ok(self):
        return self.error is None

    def raise_for_error(self):
        if self.error is not None:
            raise self.error


def normalize_partition_name(name):
    if not isinstance(name, str):
        raise InvalidArgument('Partition name must be a string')
    return name.strip().lower()


def validate_partition_name(name):
    name = normalize_partition_name(name)
    if not name:
        raise InvalidArgument('Partition name is required and must be a non-empty string')
    if len(name) > MAX_PARTITION_NAME_LENGTH:
        raise InvalidArgument(f'Partition name cannot exceed {MAX_PARTITION_NAME_LENGTH} characters')
    if not PARTITION_NAME_RE.match(name):
        raise InvalidArgument(
            'Partition name can only contain lowercase letters, numbers, hyphens, and underscores'
        )
    if name in RESERVED_PARTITION_NAMES:
        raise InvalidArgument(f"'{name}' is a reserved name and cannot be used for a partition")
    return name


def validate_quota(quota):
    # bool is an int subclass; JSON true must not become a 1-byte quota
    if isinstance(quota, bool) or not isinstance(quota, int):
        raise InvalidArgument('Quota must be an integer number of bytes')
    if quota < 0:
        raise InvalidArgument('Quota cannot be negative')
    return quota


def get_owner(user_id, lock=False):
    User = get_user_model()
    queryset = User.objects.select_for_update() if lock else User.objects
    try:
        return queryset.get(pk=user_id)
    except User.DoesNotExist:
        raise NotFound('User not found', {'user_id': user_id})


def provision_default_partitions(user_id):
    """
    Create the ``personal`` and ``work`` partitions for a user that has never
    been provisioned. Returns the partitions created; a no-op for users that
    already were.
    """
    created = []
    with transaction.atomic():
        user = get_owner(user_id, lock=True)
        if user.partitions_provisioned:
            return created
        for name in DEFAULT_PARTITION_NAMES:
            partition, was_created = StoragePartition.objects.get_or_create(
                user_id=user.pk,
                name=name,
                defaults={'quota': settings.VAULT_DEFAULT_PARTITION_QUOTA, 'used': 0},
            )
            if was_created:
                created.append(partition)
        user.partitions_provisioned = True
        user.save(update_fields=['partitions_provisioned', 'updated_at'])
    logger.info("Provisioned default partitions for user %s: %s", user_id, [p.name for p in created])
    return created


def list_partitions(user_id):
    get_owner(user_id)
    return list(StoragePartition.objects.filter(user_id=user_id))


def get_partition(user_id, name):
    name = normalize_partition_name(name)
    try:
        return StoragePartition.objects.get(user_id=user_id, name=name)
    except StoragePartition.DoesNotExist:
        available = StoragePartition.objects.filter(user_id=user_id).values_list('name', flat=True)
        raise PartitionNotFound(name, list(available))


def partition_exists(user_id, name):
    return StoragePartition.objects.filter(user_id=user_id, name=normalize_partition_name(name)).exists()


def create_partition(user_id, name, quota):
    name = validate_partition_name(name)
    quota = validate_quota(quota)

    with transaction.atomic():
        # Lock the owner so concurrent creates see each other's rows
        get_owner(user_id, lock=True)
        existing = StoragePartition.objects.filter(user_id=user_id)
        if existing.filter(name=name).exists():
            raise Conflict(f"Partition '{name}' already exists", {'partition': name})
        limit = settings.VAULT_MAX_PARTITIONS
        if existing.count() >= limit:
            raise LimitExceeded(
                f'Maximum partition limit reached ({limit} partitions per user)',
                {'limit': limit},
            )
        try:
            with transaction.atomic():
                partition = StoragePartition.objects.create(user_id=user_id, name=name, quota=quota, used=0)
        except IntegrityError:
            raise Conflict(f"Partition '{name}' already exists", {'partition': name})

    logger.info("Created partition '%s' for user %s with quota %s bytes", name, user_id, quota)
    return partition


def update_quota(user_id, name, new_quota):
    new_quota = validate_quota(new_quota)
    partition = get_partition(user_id, name)

    # Conditional write: a concurrent upload cannot slip usage above the new quota
    updated = StoragePartition.objects.filter(pk=partition.pk, used__lte=new_quota).update(quota=new_quota)
    partition.refresh_from_db()
    if not updated:
        raise InvalidArgument(
            f'Cannot set quota below current usage. Current usage: {partition.used} bytes, '
            f'requested quota: {new_quota} bytes',
            {'partition': partition.name, 'used': partition.used, 'requested_quota': new_quota},
        )

    logger.info("Partition '%s' of user %s quota set to %s bytes", partition.name, user_id, new_quota)
    return partition


def _apply_usage_delta(user_id, name, delta, expression, action):
    try:
        name = normalize_partition_name(name)
        if isinstance(delta, bool) or not isinstance(delta, int) or delta < 0:
            raise InvalidArgument(f'Usage delta must be a non-negative integer, got {delta!r}')
        with transaction.atomic():
            updated = StoragePartition.objects.filter(user_id=user_id, name=name).update(used=expression)
            if not updated:
                raise PartitionNotFound(name)
            used = StoragePartition.objects.filter(user_id=user_id, name=name).values_list('used', flat=True).get()
    except (InvalidArgument, NotFound) as exc:
        logger.warning("Could not %s usage of partition '%s' for user %s: %s", action, name, user_id, exc)
        return UsageUpdate(partition=name, delta=delta, error=exc)
    except DatabaseError as exc:
        logger.exception("Database error while trying to %s usage of partition '%s' for user %s", action, name, user_id)
        return UsageUpdate(partition=name, delta=delta, error=exc)

    logger.info("Partition '%s' of user %s usage %sd by %s bytes, now %s", name, user_id, action, delta, used)
    return UsageUpdate(partition=name, delta=delta, used=used)


def increment_used(user_id, name, delta):
    return _apply_usage_delta(user_id, name, delta, F('used') + delta, 'increase')


def decrement_used(user_id, name, delta):
    # Clamp at zero so a double decrement cannot produce negative usage
    clamped = Greatest(F('used') - delta, 0, output_field=models.BigIntegerField())
    return _apply_usage_delta(user_id, name, delta, clamped, 'decrease')
