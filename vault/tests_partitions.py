"""
Partition ledger tests

Covers default provisioning, partition creation and quota updates, the
best-effort usage counters, and the endpoints:
- GET/POST /api/partitions/
- GET /api/partitions/usage/
- GET/PATCH /api/partitions/<name>/
"""

from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from .exceptions import Conflict, InvalidArgument, LimitExceeded, NotFound, PartitionNotFound
from .models import StoragePartition
from .partitions import (
    create_partition,
    decrement_used,
    increment_used,
    list_partitions,
    provision_default_partitions,
    update_quota,
)
from .testing import GB, access_token_for, create_user, make_file, make_partition, partition_of, set_used


class DefaultProvisioningTests(TestCase):

    def test_new_user_gets_personal_and_work(self):
        """A freshly created user has exactly the two default partitions"""
        user = create_user('alice')

        partitions = list_partitions(user.id)

        self.assertEqual(
            [(p.name, p.quota, p.used) for p in partitions],
            [('personal', 5 * GB, 0), ('work', 5 * GB, 0)]
        )
        user.refresh_from_db()
        self.assertTrue(user.partitions_provisioned)

    def test_legacy_user_is_provisioned_on_demand(self):
        """A user that predates partitions gets the defaults when provisioned"""
        user = create_user('legacy')
        StoragePartition.objects.filter(user=user).delete()
        type(user).objects.filter(pk=user.pk).update(partitions_provisioned=False)
        self.assertEqual(list_partitions(user.id), [])

        created = provision_default_partitions(user.id)

        self.assertEqual([p.name for p in created], ['personal', 'work'])
        self.assertEqual([p.name for p in list_partitions(user.id)], ['personal', 'work'])

    def test_provisioning_is_idempotent(self):
        """Provisioning twice creates nothing the second time"""
        user = create_user('bob')

        self.assertEqual(provision_default_partitions(user.id), [])
        self.assertEqual(StoragePartition.objects.filter(user=user).count(), 2)

    def test_provisioned_user_keeps_deleted_defaults_deleted(self):
        """Re-running provisioning does not resurrect a removed default"""
        user = create_user('carol')
        StoragePartition.objects.filter(user=user, name='work').delete()

        provision_default_partitions(user.id)

        self.assertEqual([p.name for p in list_partitions(user.id)], ['personal'])

    @override_settings(VAULT_DEFAULT_PARTITION_QUOTA=1234)
    def test_default_quota_comes_from_settings(self):
        """The default quota is configurable"""
        user = create_user('dave')

        self.assertEqual({p.quota for p in list_partitions(user.id)}, {1234})

    def test_list_partitions_unknown_user(self):
        """Listing partitions of a missing user fails with NotFound"""
        with self.assertRaises(NotFound):
            list_partitions(999999)


class CreatePartitionTests(TestCase):

    def setUp(self):
        self.user = create_user('testuser')

    def test_create_partition_success(self):
        """A valid partition is created empty"""
        partition = create_partition(self.user.id, 'projects', 1000)

        self.assertEqual(partition.name, 'projects')
        self.assertEqual(partition.quota, 1000)
        self.assertEqual(partition.used, 0)
        self.assertTrue(StoragePartition.objects.filter(user=self.user, name='projects').exists())

    def test_create_partition_normalizes_name(self):
        """Names are trimmed and lowercased before validation"""
        partition = create_partition(self.user.id, '  Client-Work_2 ', 1000)

        self.assertEqual(partition.name, 'client-work_2')

    def test_create_partition_invalid_names(self):
        """Names outside [a-z0-9-_] or longer than 50 characters are rejected"""
        for name in ['', '   ', 'my docs', 'docs!', 'ünicode', 'a' * 51, None, 42]:
            with self.subTest(name=name):
                with self.assertRaises(InvalidArgument):
                    create_partition(self.user.id, name, 1000)

    def test_create_partition_reserved_names(self):
        """Names that collide with fixed partition routes are rejected"""
        for name in ['usage', 'move-files', 'reconcile', ' Usage ']:
            with self.subTest(name=name):
                with self.assertRaises(InvalidArgument):
                    create_partition(self.user.id, name, 1000)

        self.assertEqual(StoragePartition.objects.filter(user=self.user).count(), 2)

    def test_create_partition_name_length_boundary(self):
        """A 50 character name is accepted"""
        partition = create_partition(self.user.id, 'a' * 50, 1000)
        self.assertEqual(len(partition.name), 50)

    def test_create_partition_invalid_quota(self):
        """Quota must be a non-negative integer"""
        for quota in [-1, 1.5, '1000', None, True]:
            with self.subTest(quota=quota):
                with self.assertRaises(InvalidArgument):
                    create_partition(self.user.id, 'projects', quota)

    def test_create_partition_duplicate(self):
        """An existing name, in any case, is a conflict"""
        create_partition(self.user.id, 'projects', 1000)

        with self.assertRaises(Conflict):
            create_partition(self.user.id, 'projects', 2000)
        with self.assertRaises(Conflict):
            create_partition(self.user.id, 'PROJECTS', 2000)
        with self.assertRaises(Conflict):
            create_partition(self.user.id, 'personal', 2000)

    def test_create_partition_limit(self):
        """At most ten partitions per user, defaults included"""
        for i in range(8):
            create_partition(self.user.id, f'extra-{i}', 1000)
        self.assertEqual(StoragePartition.objects.filter(user=self.user).count(), 10)

        with self.assertRaises(LimitExceeded):
            create_partition(self.user.id, 'one-too-many', 1000)
        self.assertEqual(StoragePartition.objects.filter(user=self.user).count(), 10)

    def test_same_name_for_different_users(self):
        """Uniqueness is per user"""
        other = create_user('other')

        create_partition(self.user.id, 'projects', 1000)
        create_partition(other.id, 'projects', 1000)

        self.assertEqual(StoragePartition.objects.filter(name='projects').count(), 2)

    def test_create_partition_unknown_user(self):
        """Creating for a missing user fails with NotFound"""
        with self.assertRaises(NotFound):
            create_partition(999999, 'projects', 1000)


class UpdateQuotaTests(TestCase):

    def setUp(self):
        self.user = create_user('testuser')
        make_partition(self.user, 'projects', quota=1000, used=600)

    def test_update_quota_success(self):
        """Quota can be raised or lowered down to current usage"""
        self.assertEqual(update_quota(self.user.id, 'projects', 5000).quota, 5000)
        self.assertEqual(update_quota(self.user.id, 'projects', 600).quota, 600)
        self.assertEqual(partition_of(self.user, 'projects').quota, 600)

    def test_update_quota_below_used(self):
        """Quota can never go below committed usage; stored quota is unchanged"""
        with self.assertRaises(InvalidArgument) as ctx:
            update_quota(self.user.id, 'projects', 599)

        self.assertEqual(ctx.exception.details['used'], 600)
        self.assertEqual(partition_of(self.user, 'projects').quota, 1000)

    def test_update_quota_invalid_value(self):
        """Non-integer and negative quotas are rejected"""
        for quota in [-1, '2000', None, 2.5, False]:
            with self.subTest(quota=quota):
                with self.assertRaises(InvalidArgument):
                    update_quota(self.user.id, 'projects', quota)

    def test_update_quota_missing_partition(self):
        """Updating a missing partition fails with PartitionNotFound"""
        with self.assertRaises(PartitionNotFound):
            update_quota(self.user.id, 'nope', 1000)

    def test_update_quota_case_insensitive_lookup(self):
        """Lookups normalize the name the same way creation does"""
        self.assertEqual(update_quota(self.user.id, 'Projects', 2000).name, 'projects')


class UsageCounterTests(TestCase):

    def setUp(self):
        self.user = create_user('testuser')
        set_used(self.user, 'personal', 500)

    def test_increment_used(self):
        """Increment adds the delta and reports the new total"""
        update = increment_used(self.user.id, 'personal', 250)

        self.assertTrue(update.ok)
        self.assertEqual(update.used, 750)
        self.assertEqual(partition_of(self.user, 'personal').used, 750)

    def test_decrement_used(self):
        """Decrement subtracts the delta"""
        update = decrement_used(self.user.id, 'personal', 200)

        self.assertTrue(update.ok)
        self.assertEqual(partition_of(self.user, 'personal').used, 300)

    def test_decrement_clamps_at_zero(self):
        """A decrement larger than usage leaves zero, not a negative number"""
        update = decrement_used(self.user.id, 'personal', 10_000)

        self.assertTrue(update.ok)
        self.assertEqual(update.used, 0)
        self.assertEqual(partition_of(self.user, 'personal').used, 0)

    def test_missing_partition_is_reported_not_raised(self):
        """A missing partition is logged and returned as a failed update"""
        with self.assertLogs('vault.partitions', level='WARNING'):
            update = increment_used(self.user.id, 'ghost', 100)

        self.assertFalse(update.ok)
        self.assertIsInstance(update.error, PartitionNotFound)
        with self.assertRaises(PartitionNotFound):
            update.raise_for_error()

    def test_missing_user_is_reported_not_raised(self):
        """Counters for an unknown user fail softly"""
        update = decrement_used(999999, 'personal', 100)
        self.assertFalse(update.ok)

    def test_negative_delta_is_rejected_softly(self):
        """Deltas are always non-negative"""
        update = increment_used(self.user.id, 'personal', -5)

        self.assertFalse(update.ok)
        self.assertIsInstance(update.error, InvalidArgument)
        self.assertEqual(partition_of(self.user, 'personal').used, 500)

    def test_database_error_is_reported_not_raised(self):
        """A database failure during bookkeeping does not propagate"""
        with patch.object(StoragePartition.objects, 'filter', side_effect=DatabaseError('connection lost')):
            with self.assertLogs('vault.partitions', level='ERROR'):
                update = increment_used(self.user.id, 'personal', 100)

        self.assertFalse(update.ok)
        self.assertIsInstance(update.error, DatabaseError)


class PartitionAPITests(APITestCase):
    """Tests for the partition listing, creation, detail and update endpoints"""

    def setUp(self):
        self.list_url = reverse('partition_list')
        self.usage_url = reverse('partition_usage')
        self.user = create_user('testuser')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(self.user)}')

    def test_list_partitions(self):
        """Listing returns every partition with computed stats"""
        set_used(self.user, 'personal', GB)

        response = self.client.get(self.list_url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([p['name'] for p in response.data], ['personal', 'work'])
        personal = response.data[0]
        self.assertEqual(personal['quota'], 5 * GB)
        self.assertEqual(personal['used'], GB)
        self.assertEqual(personal['available'], 4 * GB)
        self.assertEqual(personal['usage_percentage'], 20.0)
        self.assertEqual(personal['used_formatted'], '1.0 GB')
        self.assertTrue(personal['is_default'])

    def test_list_partitions_unauthenticated(self):
        """Partition endpoints require a token"""
        response = APIClient().get(self.list_url)
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_create_partition(self):
        """POST creates a partition"""
        response = self.client.post(self.list_url, {'name': 'Projects', 'quota': 1000}, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['name'], 'projects')
        self.assertEqual(response.data['used'], 0)
        self.assertFalse(response.data['is_default'])

    def test_create_partition_invalid(self):
        """Validation failures are reported with a machine-readable code"""
        response = self.client.post(self.list_url, {'name': 'bad name', 'quota': 1000}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'invalid_argument')
        self.assertIn('error', response.data)

    def test_create_partition_reserved_name(self):
        """A partition named after a fixed route could never be updated or deleted"""
        for name in ['usage', 'move-files', 'reconcile']:
            with self.subTest(name=name):
                response = self.client.post(self.list_url, {'name': name, 'quota': 1000}, format='json')

                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
                self.assertEqual(response.data['code'], 'invalid_argument')
                self.assertFalse(StoragePartition.objects.filter(user=self.user, name=name).exists())

    def test_create_partition_missing_quota(self):
        """Quota is required"""
        response = self.client.post(self.list_url, {'name': 'projects'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'invalid_argument')

    def test_create_partition_duplicate(self):
        """A duplicate name is rejected"""
        response = self.client.post(self.list_url, {'name': 'work', 'quota': 1000}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'conflict')

    def test_create_partition_over_limit(self):
        """The eleventh partition is rejected"""
        for i in range(8):
            make_partition(self.user, f'p{i}', 1000)

        response = self.client.post(self.list_url, {'name': 'p-extra', 'quota': 1000}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'limit_exceeded')

    def test_partition_detail(self):
        """Detail includes live and trashed counts and a mimetype breakdown"""
        make_partition(self.user, 'docs', quota=10_000, used=600)
        make_file(self.user, 'docs', size=100, mime_type='text/plain')
        make_file(self.user, 'docs', size=200, mime_type='text/plain')
        make_file(self.user, 'docs', size=300, mime_type='application/pdf')
        make_file(self.user, 'docs', size=400, mime_type='application/pdf', deleted=True)
        make_file(self.user, 'personal', size=500)

        response = self.client.get(reverse('partition_detail', kwargs={'partition_name': 'docs'}))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['name'], 'docs')
        self.assertEqual(response.data['file_count'], 3)
        self.assertEqual(response.data['trashed_file_count'], 1)
        self.assertEqual(response.data['file_types'], [
            {'mime_type': 'text/plain', 'count': 2, 'total_size': 300},
            {'mime_type': 'application/pdf', 'count': 1, 'total_size': 300},
        ])

    def test_partition_detail_not_found(self):
        """Unknown partitions return 404"""
        response = self.client.get(reverse('partition_detail', kwargs={'partition_name': 'nope'}))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['code'], 'partition_not_found')

    def test_partition_detail_other_users_partition(self):
        """Another user's partition is invisible"""
        other = create_user('other')
        make_partition(other, 'secret', 1000)

        response = self.client.get(reverse('partition_detail', kwargs={'partition_name': 'secret'}))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_update_quota(self):
        """PATCH changes the quota"""
        url = reverse('partition_detail', kwargs={'partition_name': 'work'})

        response = self.client.patch(url, {'quota': 2 * GB}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['quota'], 2 * GB)
        self.assertEqual(partition_of(self.user, 'work').quota, 2 * GB)

    def test_update_quota_below_usage(self):
        """PATCH below usage is rejected and changes nothing"""
        set_used(self.user, 'work', 5000)
        url = reverse('partition_detail', kwargs={'partition_name': 'work'})

        response = self.client.patch(url, {'quota': 4999}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['details']['used'], 5000)
        self.assertEqual(partition_of(self.user, 'work').quota, 5 * GB)

    def test_update_quota_not_found(self):
        """PATCH on a missing partition returns 404"""
        url = reverse('partition_detail', kwargs={'partition_name': 'nope'})

        response = self.client.patch(url, {'quota': 1000}, format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_usage_stats(self):
        """Usage endpoint reports per-partition stats and totals"""
        make_partition(self.user, 'small', quota=1000, used=900)
        make_file(self.user, 'small', size=900)
        make_file(self.user, 'personal', size=10)
        make_file(self.user, 'personal', size=10, deleted=True)

        response = self.client.get(self.usage_url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        partitions = {p['name']: p for p in response.data['partitions']}
        self.assertEqual(set(partitions), {'personal', 'work', 'small'})
        self.assertEqual(partitions['small']['stats']['total_files'], 1)
        self.assertTrue(partitions['small']['stats']['is_near_limit'])
        self.assertFalse(partitions['small']['stats']['is_over_limit'])
        self.assertEqual(partitions['personal']['stats']['total_files'], 1)
        self.assertEqual(partitions['work']['stats']['total_files'], 0)
        self.assertEqual(response.data['total_files'], 2)
        self.assertEqual(response.data['total_quota'], 10 * GB + 1000)
        self.assertEqual(response.data['total_used'], 900)
