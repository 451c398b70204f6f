from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from vault.reconciliation import reconcile_all_partitions


class Command(BaseCommand):
    help = "Recompute partition usage from file records and correct any drift."

    def add_arguments(self, parser):
        parser.add_argument('--user', type=int, action='append', dest='users',
                            help='Only reconcile this user id (repeatable)')
        parser.add_argument('--dry-run', action='store_true',
                            help='Report drift without writing corrected values')

    def handle(self, *args, **options):
        User = get_user_model()
        user_ids = options['users'] or list(User.objects.values_list('pk', flat=True))
        missing = set(user_ids) - set(User.objects.filter(pk__in=user_ids).values_list('pk', flat=True))
        if missing:
            raise CommandError(f"Unknown user ids: {', '.join(str(u) for u in sorted(missing))}")

        dry_run = options['dry_run']
        drifted = 0
        failures = 0
        for user_id in user_ids:
            report = reconcile_all_partitions(user_id, dry_run=dry_run)
            for name, used in report.results.items():
                marker = ' (drifted)' if name in report.drifted else ''
                self.stdout.write(f'user {user_id} {name}: {used} bytes{marker}')
            for name, message in report.errors.items():
                self.stderr.write(f'user {user_id} {name}: {message}')
            drifted += len(report.drifted)
            failures += len(report.errors)

        verb = 'Found' if dry_run else 'Corrected'
        summary = f'{verb} drift in {drifted} partitions across {len(user_ids)} users'
        if failures:
            self.stdout.write(self.style.WARNING(f'{summary}; {failures} partitions failed'))
        else:
            self.stdout.write(self.style.SUCCESS(summary))
