"""
Usage reconciler: recomputes each partition's ``used`` from the files table
and overwrites the stored counter.

Reconciliation is last-writer-wins. An upload that commits while the sum is
being computed can be lost from the result; run it again if that matters.
"""

import logging
from dataclasses import dataclass, field

from django.db import DatabaseError, transaction
from django.db.models import Sum

from .exceptions import PartitionError
from .models import File, StoragePartition
from .partitions import get_partition, list_partitions

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    partition: str
    previous_used: int
    computed_used: int

    @property
    def drift(self):
        return self.computed_used - self.previous_used


@dataclass
class ReconcileReport:
    results: dict = field(default_factory=dict)
    errors: dict = field(default_factory=dict)
    drifted: list = field(default_factory=list)

    @property
    def ok(self):
        return not self.errors

    def to_dict(self):
        return {
            'partitions': self.results,
            'errors': self.errors,
            'drifted': self.drifted,
        }


def compute_partition_usage(user_id, name):
    totals = File.objects.filter(
        user_id=user_id,
        partition=name,
        is_deleted=False,
    ).aggregate(total=Sum('size', default=0))
    return totals['total']


def reconcile_partition(user_id, partition_name, dry_run=False):
    partition = get_partition(user_id, partition_name)
    computed = compute_partition_usage(user_id, partition.name)
    result = ReconcileResult(partition=partition.name, previous_used=partition.used, computed_used=computed)

    if not dry_run:
        StoragePartition.objects.filter(pk=partition.pk).update(used=computed)

    if result.drift:
        logger.warning(
            "Partition '%s' of user %s drifted by %s bytes (stored %s, actual %s)%s",
            partition.name, user_id, result.drift, partition.used, computed,
            ' [dry run]' if dry_run else '',
        )
    return result


def reconcile_all_partitions(user_id, dry_run=False):
    """
    Reconcile every partition of a user, one at a time. A failure on one
    partition is recorded in ``report.errors`` and the rest still run.
    """
    report = ReconcileReport()
    for partition in list_partitions(user_id):
        try:
            with transaction.atomic():
                result = reconcile_partition(user_id, partition.name, dry_run=dry_run)
        except (PartitionError, DatabaseError) as exc:
            logger.exception("Failed to reconcile partition '%s' of user %s", partition.name, user_id)
            report.errors[partition.name] = str(exc)
            continue
        report.results[result.partition] = result.computed_used
        if result.drift:
            report.drifted.append(result.partition)
    return report
