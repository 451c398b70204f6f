"""
Usage reconciliation tests

Covers recomputing partition usage from file records and the endpoints:
- POST /api/partitions/reconcile/
- POST /api/partitions/<name>/reconcile/
"""

from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from .exceptions import NotFound, PartitionNotFound
from .reconciliation import compute_partition_usage, reconcile_all_partitions, reconcile_partition
from .testing import access_token_for, create_user, make_file, make_partition, partition_of, set_used


class ReconcileTests(TestCase):

    def setUp(self):
        self.user = create_user('testuser')
        make_file(self.user, 'personal', size=100)
        make_file(self.user, 'personal', size=250)
        make_file(self.user, 'personal', size=999, deleted=True)
        make_file(self.user, 'work', size=40)

    def test_compute_usage_ignores_trash(self):
        """Only live files count towards usage"""
        self.assertEqual(compute_partition_usage(self.user.id, 'personal'), 350)
        self.assertEqual(compute_partition_usage(self.user.id, 'work'), 40)
        self.assertEqual(compute_partition_usage(self.user.id, 'empty'), 0)

    def test_reconcile_partition_corrects_drift(self):
        """Stored usage is overwritten with the computed sum"""
        set_used(self.user, 'personal', 5000)

        with self.assertLogs('vault.reconciliation', level='WARNING'):
            result = reconcile_partition(self.user.id, 'personal')

        self.assertEqual(result.previous_used, 5000)
        self.assertEqual(result.computed_used, 350)
        self.assertEqual(result.drift, -4650)
        self.assertEqual(partition_of(self.user, 'personal').used, 350)

    def test_reconcile_partition_dry_run(self):
        """A dry run reports drift without writing"""
        set_used(self.user, 'personal', 0)

        result = reconcile_partition(self.user.id, 'personal', dry_run=True)

        self.assertEqual(result.drift, 350)
        self.assertEqual(partition_of(self.user, 'personal').used, 0)

    def test_reconcile_all_matches_files(self):
        """After reconciling, every partition equals the sum of its live files"""
        set_used(self.user, 'personal', 1)
        set_used(self.user, 'work', 40)
        make_partition(self.user, 'archive', quota=10_000, used=77)

        report = reconcile_all_partitions(self.user.id)

        self.assertTrue(report.ok)
        self.assertEqual(report.results, {'personal': 350, 'work': 40, 'archive': 0})
        self.assertEqual(sorted(report.drifted), ['archive', 'personal'])
        for name, expected in report.results.items():
            self.assertEqual(partition_of(self.user, name).used, expected)

    def test_reconcile_is_idempotent(self):
        """A second run finds nothing to correct"""
        reconcile_all_partitions(self.user.id)

        report = reconcile_all_partitions(self.user.id)

        self.assertEqual(report.drifted, [])

    def test_reconcile_all_isolates_failures(self):
        """A failing partition is reported and the others are still fixed"""
        set_used(self.user, 'personal', 1)
        set_used(self.user, 'work', 1)

        def flaky(user_id, name):
            if name == 'personal':
                raise DatabaseError('disk I/O error')
            return 40

        with patch('vault.reconciliation.compute_partition_usage', side_effect=flaky):
            with self.assertLogs('vault.reconciliation', level='ERROR'):
                report = reconcile_all_partitions(self.user.id)

        self.assertFalse(report.ok)
        self.assertIn('personal', report.errors)
        self.assertEqual(report.results, {'work': 40})
        self.assertEqual(partition_of(self.user, 'personal').used, 1)
        self.assertEqual(partition_of(self.user, 'work').used, 40)

    def test_reconcile_unknown_user(self):
        """Reconciling a missing user fails with NotFound"""
        with self.assertRaises(NotFound):
            reconcile_all_partitions(999999)

    def test_reconcile_missing_partition(self):
        """Reconciling a missing partition fails with PartitionNotFound"""
        with self.assertRaises(PartitionNotFound):
            reconcile_partition(self.user.id, 'archive')

    def test_other_users_files_are_not_counted(self):
        """Usage is per owner"""
        other = create_user('other')
        make_file(other, 'personal', size=5000)

        self.assertEqual(reconcile_partition(self.user.id, 'personal').computed_used, 350)


class ReconcileAPITests(APITestCase):
    """Tests for the reconcile endpoints"""

    def setUp(self):
        self.user = create_user('testuser')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(self.user)}')
        make_file(self.user, 'work', size=300)
        set_used(self.user, 'work', 1000)

    def test_reconcile_all_endpoint(self):
        """POST /partitions/reconcile/ returns the corrected totals"""
        response = self.client.post(reverse('partition_reconcile_all'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['partitions'], {'personal': 0, 'work': 300})
        self.assertEqual(response.data['drifted'], ['work'])
        self.assertEqual(response.data['errors'], {})
        self.assertEqual(partition_of(self.user, 'work').used, 300)

    def test_reconcile_one_endpoint(self):
        """POST /partitions/<name>/reconcile/ returns the drift"""
        response = self.client.post(reverse('partition_reconcile', kwargs={'partition_name': 'work'}))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {
            'partition': 'work',
            'previous_used': 1000,
            'computed_used': 300,
            'drift': -700,
        })

    def test_reconcile_one_not_found(self):
        """Unknown partitions return 404"""
        response = self.client.post(reverse('partition_reconcile', kwargs={'partition_name': 'nope'}))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
