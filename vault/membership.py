"""
Moves batches of files between partitions and keeps the usage counters in
step with the move.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from django.db import transaction
from django.utils import timezone

from .exceptions import Forbidden, InvalidArgument, QuotaExceeded
from .models import File
from .partitions import decrement_used, get_partition
from .quota import reserve_quota

logger = logging.getLogger(__name__)


@dataclass
class MoveResult:
    moved_count: int
    total_size: int
    target_partition: str
    per_source_deltas: dict = field(default_factory=dict)
    unchanged_count: int = 0
    counter_errors: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            'moved_count': self.moved_count,
            'total_size': self.total_size,
            'target_partition': self.target_partition,
            'per_source_deltas': self.per_source_deltas,
            'unchanged_count': self.unchanged_count,
            'counter_errors': self.counter_errors,
        }


def _clean_file_ids(file_ids):
    if not isinstance(file_ids, (list, tuple)) or not file_ids:
        raise InvalidArgument('fileIds must be a non-empty array')
    cleaned = []
    for file_id in file_ids:
        # Only whole numbers or digit strings; floats would otherwise truncate
        if isinstance(file_id, str) and file_id.isascii() and file_id.isdigit():
            file_id = int(file_id)
        if isinstance(file_id, bool) or not isinstance(file_id, int):
            raise InvalidArgument(f'Invalid file ID: {file_id}')
        cleaned.append(file_id)
    return list(dict.fromkeys(cleaned))


def move_files(user_id, file_ids, target_partition):
    """
    Move ``file_ids`` into ``target_partition``.

    All-or-nothing: if any id is missing, deleted or owned by someone else,
    nothing moves. Files already in the target are left where they are and
    do not count against its quota.
    """
    file_ids = _clean_file_ids(file_ids)
    target = get_partition(user_id, target_partition)

    files = list(File.objects.filter(pk__in=file_ids, is_deleted=False))
    owned = [f for f in files if f.user_id == user_id]
    if len(owned) != len(file_ids):
        raise Forbidden('Some files not found or access denied', {'requested': len(file_ids), 'found': len(owned)})

    moving = [f for f in owned if f.partition != target.name]
    total_size = sum(f.size for f in moving)
    per_source_deltas = defaultdict(int)
    for f in moving:
        per_source_deltas[f.partition] += f.size

    result = MoveResult(
        moved_count=len(moving),
        total_size=total_size,
        target_partition=target.name,
        per_source_deltas=dict(per_source_deltas),
        unchanged_count=len(owned) - len(moving),
    )
    if not moving:
        return result

    if target.used + total_size > target.quota:
        raise QuotaExceeded(target.name, target.quota, target.used, total_size)

    with transaction.atomic():
        File.objects.filter(pk__in=[f.pk for f in moving], user_id=user_id).update(
            partition=target.name,
            updated_at=timezone.now(),
        )
        if total_size:
            # Losing a race for the last bytes rolls the reassignment back
            reserve_quota(user_id, target.name, total_size).raise_if_denied()
        for source, delta in result.per_source_deltas.items():
            update = decrement_used(user_id, source, delta)
            if not update.ok:
                result.counter_errors[source] = str(update.error)

    logger.info(
        "Moved %s files (%s bytes) to partition '%s' for user %s",
        result.moved_count, total_size, target.name, user_id,
    )
    return result
