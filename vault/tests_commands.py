from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase

from .models import File, StoragePartition
from .testing import create_user, make_file, partition_of, set_used

User = get_user_model()


def run(command, *args):
    out, err = StringIO(), StringIO()
    call_command(command, *args, stdout=out, stderr=err)
    return out.getvalue(), err.getvalue()


class ProvisionPartitionsCommandTests(TestCase):

    def setUp(self):
        self.legacy = create_user('legacy')
        StoragePartition.objects.filter(user=self.legacy).delete()
        User.objects.filter(pk=self.legacy.pk).update(partitions_provisioned=False)
        self.unassigned = make_file(self.legacy, '', size=70)
        make_file(self.legacy, '', size=30)

        self.current = create_user('current')
        make_file(self.current, 'work', size=5)

    def test_brings_legacy_users_up_to_date(self):
        """Defaults are created, stray files assigned and usage recomputed"""
        out, err = run('provision_partitions')

        self.assertEqual(
            list(StoragePartition.objects.filter(user=self.legacy).values_list('name', flat=True)),
            ['personal', 'work']
        )
        self.assertEqual(File.objects.get(pk=self.unassigned.pk).partition, 'personal')
        self.assertEqual(partition_of(self.legacy, 'personal').used, 100)
        self.assertEqual(partition_of(self.current, 'work').used, 5)
        self.assertIn('Provisioned default partitions for 1 users', out)
        self.assertIn('Partition migration completed', out)
        self.assertEqual(err, '')

    def test_is_safe_to_rerun(self):
        """A second run changes nothing"""
        run('provision_partitions')

        out, _ = run('provision_partitions')

        self.assertIn('Provisioned default partitions for 0 users', out)
        self.assertEqual(StoragePartition.objects.filter(user=self.legacy).count(), 2)


class ReconcilePartitionsCommandTests(TestCase):

    def setUp(self):
        self.user = create_user('testuser')
        make_file(self.user, 'personal', size=123)
        set_used(self.user, 'personal', 999)

    def test_reconcile_corrects_drift(self):
        out, _ = run('reconcile_partitions')

        self.assertIn(f'user {self.user.id} personal: 123 bytes (drifted)', out)
        self.assertIn('Corrected drift in 1 partitions across 1 users', out)
        self.assertEqual(partition_of(self.user, 'personal').used, 123)

    def test_dry_run_writes_nothing(self):
        out, _ = run('reconcile_partitions', '--dry-run')

        self.assertIn('Found drift in 1 partitions', out)
        self.assertEqual(partition_of(self.user, 'personal').used, 999)

    def test_single_user(self):
        other = create_user('other')
        set_used(other, 'work', 50)

        out, _ = run('reconcile_partitions', '--user', str(other.id))

        self.assertEqual(partition_of(other, 'work').used, 0)
        self.assertEqual(partition_of(self.user, 'personal').used, 999)
        self.assertIn('across 1 users', out)

    def test_unknown_user(self):
        with self.assertRaises(CommandError):
            run('reconcile_partitions', '--user', '999999')
