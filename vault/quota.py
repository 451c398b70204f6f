"""
Quota gate: decides whether a write of N bytes fits in a partition.

``check_quota`` is a pure read used to fail fast before any bytes are stored.
``reserve_quota`` charges the partition with a single conditional UPDATE
(``used + size <= quota`` in the WHERE clause). Two writers that both passed
the check therefore cannot both commit past the quota.
"""

import logging
from dataclasses import dataclass

from django.db.models import F

from .exceptions import InvalidArgument, QuotaExceeded
from .models import StoragePartition
from .partitions import get_partition, normalize_partition_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    partition: str
    quota: int
    used: int
    requested: int

    @property
    def available(self):
        return max(0, self.quota - self.used)

    def raise_if_denied(self):
        if not self.allowed:
            raise QuotaExceeded(self.partition, self.quota, self.used, self.requested)
        return self

    def to_dict(self):
        return {
            'allowed': self.allowed,
            'partition': self.partition,
            'quota': self.quota,
            'used': self.used,
            'requested': self.requested,
            'available': self.available,
        }


def _validate_size(size):
    if isinstance(size, bool) or not isinstance(size, int):
        raise InvalidArgument('Size must be an integer number of bytes')
    if size <= 0:
        raise InvalidArgument('Invalid file size for quota check', {'requested': size})
    return size


def _decide(partition, size):
    return QuotaDecision(
        allowed=partition.used + size <= partition.quota,
        partition=partition.name,
        quota=partition.quota,
        used=partition.used,
        requested=size,
    )


def check_quota(user_id, partition_name, candidate_size):
    candidate_size = _validate_size(candidate_size)
    partition = get_partition(user_id, partition_name)
    decision = _decide(partition, candidate_size)
    if decision.allowed:
        logger.debug(
            "Quota check passed for partition '%s' of user %s: %s bytes requested, %s available",
            partition.name, user_id, candidate_size, decision.available,
        )
    else:
        logger.info(
            "Quota check denied for partition '%s' of user %s: %s bytes requested, %s available",
            partition.name, user_id, candidate_size, decision.available,
        )
    return decision


def reserve_quota(user_id, partition_name, size):
    """
    Atomically add ``size`` to the partition's usage if it still fits.

    Returns an allowed decision with the post-charge numbers, or a denied one
    with the numbers that blocked it. Nothing is written when denied.
    """
    size = _validate_size(size)
    name = normalize_partition_name(partition_name)
    charged = (
        StoragePartition.objects
        .filter(user_id=user_id, name=name, used__lte=F('quota') - size)
        .update(used=F('used') + size)
    )
    partition = get_partition(user_id, name)
    if charged:
        logger.info(
            "Reserved %s bytes in partition '%s' of user %s, now %s/%s",
            size, name, user_id, partition.used, partition.quota,
        )
        return QuotaDecision(allowed=True, partition=name, quota=partition.quota, used=partition.used, requested=size)

    logger.warning(
        "Reservation of %s bytes in partition '%s' of user %s refused: %s/%s used",
        size, name, user_id, partition.used, partition.quota,
    )
    return QuotaDecision(allowed=False, partition=name, quota=partition.quota, used=partition.used, requested=size)
