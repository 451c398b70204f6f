"""
Partition deletion tests

Covers the deletion policies and DELETE /api/partitions/<name>/
"""

from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from .exceptions import Conflict, Forbidden, PartitionNotFound
from .lifecycle import Migrate, SoftDeleteAll, choose_deletion_policy, delete_partition
from .models import File, StoragePartition
from .testing import access_token_for, create_user, make_file, make_partition, partition_of, set_used


def snapshot(user):
    """Every partition and file field that a refused delete must leave alone"""
    partitions = list(StoragePartition.objects.filter(user=user).order_by('name').values('name', 'quota', 'used'))
    files = list(File.objects.filter(user=user).order_by('id').values('id', 'partition', 'is_deleted', 'deleted_at'))
    return partitions, files


class DeletionPolicyTests(TestCase):

    def test_custom_partition_migrates_to_personal(self):
        self.assertEqual(choose_deletion_policy('projects', {'personal', 'projects'}), Migrate('personal'))

    def test_personal_is_soft_deleted(self):
        self.assertEqual(choose_deletion_policy('personal', {'personal', 'work'}), SoftDeleteAll())

    def test_no_personal_means_soft_delete(self):
        self.assertEqual(choose_deletion_policy('projects', {'work', 'projects'}), SoftDeleteAll())

    def test_describe(self):
        self.assertEqual(Migrate('personal').describe(), 'migrate:personal')
        self.assertEqual(SoftDeleteAll().describe(), 'soft_delete')


class DeletePartitionTests(TestCase):

    def setUp(self):
        self.user = create_user('testuser')

    def test_delete_empty_partition(self):
        """An empty custom partition is removed without force"""
        make_partition(self.user, 'scratch', quota=1000)

        result = delete_partition(self.user.id, 'scratch')

        self.assertEqual(result.partition, 'scratch')
        self.assertEqual(result.files_affected, 0)
        self.assertIsNone(result.policy)
        self.assertFalse(StoragePartition.objects.filter(user=self.user, name='scratch').exists())

    def test_delete_trashed_only_partition(self):
        """Trashed files do not block deletion"""
        make_partition(self.user, 'scratch', quota=1000)
        make_file(self.user, 'scratch', size=10, deleted=True)

        result = delete_partition(self.user.id, 'scratch')

        self.assertEqual(result.files_affected, 0)

    def test_delete_non_empty_without_force(self):
        """A partition with live files is kept, byte for byte"""
        make_partition(self.user, 'projects', quota=1000, used=30)
        make_file(self.user, 'projects', size=10)
        make_file(self.user, 'projects', size=20)
        before = snapshot(self.user)

        with self.assertRaises(Conflict) as ctx:
            delete_partition(self.user.id, 'projects')

        self.assertEqual(ctx.exception.details['file_count'], 2)
        self.assertEqual(snapshot(self.user), before)

    def test_delete_default_without_force(self):
        """Default partitions need force even when empty"""
        before = snapshot(self.user)

        for name in ['personal', 'work']:
            with self.subTest(name=name):
                with self.assertRaises(Forbidden):
                    delete_partition(self.user.id, name)

        self.assertEqual(snapshot(self.user), before)

    def test_delete_missing_partition(self):
        """Deleting an unknown partition fails with PartitionNotFound"""
        with self.assertRaises(PartitionNotFound):
            delete_partition(self.user.id, 'nope')

    def test_force_delete_migrates_to_personal(self):
        """Files of a forced custom partition move to personal with their bytes"""
        make_partition(self.user, 'projects', quota=1000, used=30)
        f1 = make_file(self.user, 'projects', size=10)
        f2 = make_file(self.user, 'projects', size=20)
        set_used(self.user, 'personal', 5)

        result = delete_partition(self.user.id, 'projects', force=True)

        self.assertEqual(result.policy, Migrate('personal'))
        self.assertEqual(result.files_affected, 2)
        self.assertTrue(result.counter_update.ok)
        self.assertEqual(partition_of(self.user, 'personal').used, 35)
        self.assertEqual(
            set(File.objects.filter(pk__in=[f1.id, f2.id]).values_list('partition', flat=True)),
            {'personal'}
        )
        self.assertFalse(StoragePartition.objects.filter(user=self.user, name='projects').exists())

    def test_force_delete_personal_soft_deletes(self):
        """Forcing the personal partition away sends its files to the trash"""
        set_used(self.user, 'personal', 1000)
        files = [make_file(self.user, 'personal', size=100) for _ in range(10)]

        result = delete_partition(self.user.id, 'personal', force=True)

        self.assertEqual(result.policy, SoftDeleteAll())
        self.assertEqual(result.files_affected, 10)
        trashed = File.objects.filter(pk__in=[f.id for f in files])
        self.assertTrue(all(f.is_deleted and f.deleted_at for f in trashed))
        self.assertEqual([p.name for p in StoragePartition.objects.filter(user=self.user)], ['work'])

    def test_force_delete_without_personal_soft_deletes(self):
        """With personal gone there is nowhere to migrate to"""
        StoragePartition.objects.filter(user=self.user, name='personal').delete()
        make_partition(self.user, 'projects', quota=1000, used=10)
        f = make_file(self.user, 'projects', size=10)

        result = delete_partition(self.user.id, 'projects', force=True)

        self.assertEqual(result.policy, SoftDeleteAll())
        self.assertTrue(File.objects.get(pk=f.id).is_deleted)

    def test_force_delete_empty_default(self):
        """An empty default partition can be removed with force"""
        result = delete_partition(self.user.id, 'work', force=True)

        self.assertTrue(result.forced)
        self.assertIsNone(result.policy)
        self.assertFalse(StoragePartition.objects.filter(user=self.user, name='work').exists())

    def test_deleted_name_can_be_reused(self):
        """A deleted partition's name is free again"""
        make_partition(self.user, 'scratch', quota=1000)
        delete_partition(self.user.id, 'scratch')

        make_partition(self.user, 'scratch', quota=2000)

        self.assertEqual(partition_of(self.user, 'scratch').quota, 2000)


class DeletePartitionAPITests(APITestCase):
    """Tests for DELETE /api/partitions/<name>/"""

    def setUp(self):
        self.user = create_user('testuser')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(self.user)}')
        make_partition(self.user, 'projects', quota=1000, used=10)
        self.file = make_file(self.user, 'projects', size=10)

    def _url(self, name):
        return reverse('partition_detail', kwargs={'partition_name': name})

    def test_delete_non_empty_refused(self):
        """Non-empty partitions need ?force=true"""
        response = self.client.delete(self._url('projects'))

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'conflict')
        self.assertEqual(response.data['details']['file_count'], 1)
        self.assertTrue(StoragePartition.objects.filter(user=self.user, name='projects').exists())

    def test_delete_forced(self):
        """?force=true migrates the files and reports the policy"""
        response = self.client.delete(self._url('projects') + '?force=true')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {
            'deleted_partition': 'projects',
            'files_affected': 1,
            'forced': True,
            'policy': 'migrate:personal',
        })
        self.assertEqual(File.objects.get(pk=self.file.id).partition, 'personal')

    def test_delete_default_refused(self):
        """Default partitions cannot be removed without force"""
        response = self.client.delete(self._url('work'))

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'forbidden')

    def test_delete_not_found(self):
        """Unknown partitions return 404"""
        response = self.client.delete(self._url('nope'))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
