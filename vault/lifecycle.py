"""
Partition lifecycle: creation and quota changes go through the ledger; this
module owns deletion.

A forced delete of a non-empty partition follows one policy, chosen before
anything is written:

* ``Migrate(target)``: reassign the files to ``personal`` and add the
  deleted partition's ``used`` to it.
* ``SoftDeleteAll()``: send every file in the partition to the trash. This
  applies when ``personal`` itself is being deleted or no longer exists.

The migration target's counter is not reconciled afterwards. Any drift is
left for the next reconciliation run.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from django.db import transaction
from django.utils import timezone

from .exceptions import Conflict, Forbidden
from .models import DEFAULT_PARTITION, DEFAULT_PARTITION_NAMES, File, StoragePartition
from .partitions import UsageUpdate, get_owner, get_partition, increment_used

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migrate:
    target: str

    def describe(self):
        return f'migrate:{self.target}'


@dataclass(frozen=True)
class SoftDeleteAll:

    def describe(self):
        return 'soft_delete'


DeletionPolicy = Union[Migrate, SoftDeleteAll]


@dataclass
class DeleteResult:
    partition: str
    files_affected: int
    forced: bool
    policy: Optional[DeletionPolicy] = None
    counter_update: Optional[UsageUpdate] = None

    def to_dict(self):
        return {
            'deleted_partition': self.partition,
            'files_affected': self.files_affected,
            'forced': self.forced,
            'policy': self.policy.describe() if self.policy else None,
        }


def choose_deletion_policy(name, existing_names):
    if name != DEFAULT_PARTITION and DEFAULT_PARTITION in existing_names:
        return Migrate(DEFAULT_PARTITION)
    return SoftDeleteAll()


def _live_files(user_id, name):
    return File.objects.filter(user_id=user_id, partition=name, is_deleted=False)


def delete_partition(user_id, name, force=False):
    with transaction.atomic():
        get_owner(user_id, lock=True)
        partition = get_partition(user_id, name)
        name = partition.name

        if name in DEFAULT_PARTITION_NAMES and not force:
            raise Forbidden(
                f"Cannot delete default partition '{name}' without force=true parameter",
                {'partition': name},
            )

        file_count = _live_files(user_id, name).count()
        if file_count and not force:
            raise Conflict(
                f"Cannot delete partition '{name}' - it contains {file_count} files. "
                f"Use ?force=true to force delete or move files to another partition first.",
                {'partition': name, 'file_count': file_count},
            )

        result = DeleteResult(partition=name, files_affected=file_count, forced=bool(force))

        if file_count:
            existing_names = set(
                StoragePartition.objects.filter(user_id=user_id).values_list('name', flat=True)
            )
            policy = choose_deletion_policy(name, existing_names)
            result.policy = policy

            if isinstance(policy, Migrate):
                _live_files(user_id, name).update(partition=policy.target, updated_at=timezone.now())
                result.counter_update = increment_used(user_id, policy.target, partition.used)
                logger.info(
                    "Moved %s files from partition '%s' to '%s' for user %s",
                    file_count, name, policy.target, user_id,
                )
            else:
                now = timezone.now()
                _live_files(user_id, name).update(is_deleted=True, deleted_at=now, updated_at=now)
                logger.info("Soft deleted %s files from partition '%s' for user %s", file_count, name, user_id)

        partition.delete()

    logger.info("Deleted partition '%s' for user %s (forced=%s)", name, user_id, result.forced)
    return result
