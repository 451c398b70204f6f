from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from vault.exceptions import PartitionError
from vault.models import DEFAULT_PARTITION, File
from vault.partitions import provision_default_partitions
from vault.reconciliation import reconcile_all_partitions


class Command(BaseCommand):
    help = (
        "Bring accounts created before storage partitions up to date: create the "
        "default partitions, assign unpartitioned files to 'personal' and "
        "recompute usage for every user."
    )

    def handle(self, *args, **options):
        User = get_user_model()
        errors = []

        users_updated = 0
        for user_id in User.objects.filter(partitions_provisioned=False).values_list('pk', flat=True):
            try:
                provision_default_partitions(user_id)
            except PartitionError as exc:
                errors.append(f'user {user_id}: {exc}')
                continue
            users_updated += 1
        self.stdout.write(f'Provisioned default partitions for {users_updated} users')

        files_updated = File.objects.filter(partition='').update(partition=DEFAULT_PARTITION)
        self.stdout.write(f"Assigned {files_updated} files to the '{DEFAULT_PARTITION}' partition")

        reconciled = 0
        for user_id in User.objects.values_list('pk', flat=True):
            report = reconcile_all_partitions(user_id)
            errors.extend(f'user {user_id} partition {name}: {msg}' for name, msg in report.errors.items())
            reconciled += 1
        self.stdout.write(f'Recalculated partition usage for {reconciled} users')

        for error in errors:
            self.stderr.write(f'  - {error}')
        if errors:
            self.stdout.write(self.style.WARNING(f'Completed with {len(errors)} errors'))
        else:
            self.stdout.write(self.style.SUCCESS('Partition migration completed'))
