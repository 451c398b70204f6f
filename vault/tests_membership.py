"""
File move tests

Covers moving batches of files between partitions and
POST /api/partitions/move-files/
"""

from unittest.mock import patch

from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from .exceptions import Forbidden, InvalidArgument, PartitionNotFound, QuotaExceeded
from .membership import move_files
from .models import File
from .quota import QuotaDecision
from .testing import GB, access_token_for, create_user, make_file, make_partition, partition_of, set_used

MB = 1024 * 1024


class MoveFilesTests(TestCase):

    def setUp(self):
        self.user = create_user('testuser')
        self.a = make_file(self.user, 'personal', size=300 * MB)
        self.b = make_file(self.user, 'personal', size=200 * MB)
        set_used(self.user, 'personal', 500 * MB)
        set_used(self.user, 'work', 0)

    def _partition(self, name):
        return partition_of(self.user, name)

    def test_move_files_between_partitions(self):
        """Moving two files shifts their bytes from personal to work"""
        result = move_files(self.user.id, [self.a.id, self.b.id], 'work')

        self.assertEqual(result.moved_count, 2)
        self.assertEqual(result.total_size, 500 * MB)
        self.assertEqual(result.target_partition, 'work')
        self.assertEqual(result.per_source_deltas, {'personal': 500 * MB})
        self.assertEqual(result.counter_errors, {})
        self.assertEqual(self._partition('personal').used, 0)
        self.assertEqual(self._partition('work').used, 500 * MB)
        self.assertEqual(
            set(File.objects.filter(pk__in=[self.a.id, self.b.id]).values_list('partition', flat=True)),
            {'work'}
        )

    def test_move_into_small_partition(self):
        """500 bytes move from a to b, a 1000 byte partition"""
        make_partition(self.user, 'a', quota=1000, used=500)
        make_partition(self.user, 'b', quota=1000)
        files = [make_file(self.user, 'a', size=200), make_file(self.user, 'a', size=300)]

        move_files(self.user.id, [f.id for f in files], 'b')

        self.assertEqual(self._partition('a').used, 0)
        self.assertEqual(self._partition('b').used, 500)

    def test_move_conserves_total_usage(self):
        """The sum of usage across partitions is unchanged by a move"""
        make_partition(self.user, 'projects', quota=GB, used=10 * MB)
        c = make_file(self.user, 'projects', size=10 * MB)
        before = self._partition('personal').used + self._partition('work').used + self._partition('projects').used

        move_files(self.user.id, [self.a.id, c.id], 'work')

        after = self._partition('personal').used + self._partition('work').used + self._partition('projects').used
        self.assertEqual(before, after)
        self.assertEqual(self._partition('projects').used, 0)

    def test_move_from_several_sources(self):
        """Per-source deltas are grouped by the partition each file came from"""
        make_partition(self.user, 'projects', quota=GB, used=10 * MB)
        c = make_file(self.user, 'projects', size=10 * MB)

        result = move_files(self.user.id, [self.a.id, c.id], 'work')

        self.assertEqual(result.per_source_deltas, {'personal': 300 * MB, 'projects': 10 * MB})
        self.assertEqual(self._partition('personal').used, 200 * MB)

    def test_move_files_over_quota(self):
        """Nothing moves when the target cannot take the whole batch"""
        make_partition(self.user, 'small', quota=400 * MB)

        with self.assertRaises(QuotaExceeded) as ctx:
            move_files(self.user.id, [self.a.id, self.b.id], 'small')

        self.assertEqual(ctx.exception.requested, 500 * MB)
        self.assertEqual(ctx.exception.available, 400 * MB)
        self.assertEqual(self._partition('personal').used, 500 * MB)
        self.assertEqual(self._partition('small').used, 0)
        self.assertFalse(File.objects.filter(partition='small').exists())

    def test_move_foreign_file_forbidden(self):
        """One file owned by someone else aborts the whole move"""
        other = create_user('other')
        foreign = make_file(other, 'personal', size=10)

        with self.assertRaises(Forbidden):
            move_files(self.user.id, [self.a.id, foreign.id], 'work')

        self.assertEqual(File.objects.get(pk=self.a.id).partition, 'personal')
        self.assertEqual(File.objects.get(pk=foreign.id).partition, 'personal')
        self.assertEqual(self._partition('work').used, 0)

    def test_move_missing_file_forbidden(self):
        """An id that does not exist aborts the move"""
        with self.assertRaises(Forbidden):
            move_files(self.user.id, [self.a.id, 999999], 'work')
        self.assertEqual(File.objects.get(pk=self.a.id).partition, 'personal')

    def test_move_trashed_file_forbidden(self):
        """Trashed files cannot be moved"""
        trashed = make_file(self.user, 'personal', size=10, deleted=True)

        with self.assertRaises(Forbidden):
            move_files(self.user.id, [trashed.id], 'work')

    def test_move_to_missing_partition(self):
        """An unknown target fails with PartitionNotFound"""
        with self.assertRaises(PartitionNotFound):
            move_files(self.user.id, [self.a.id], 'archive')

    def test_move_invalid_ids(self):
        """fileIds must be a non-empty list of integers"""
        for file_ids in [[], None, 'abc', [1, 'x'], [True], 5, [1.9], [2.0], ['1.0'], [' 1']]:
            with self.subTest(file_ids=file_ids):
                with self.assertRaises(InvalidArgument):
                    move_files(self.user.id, file_ids, 'work')

    def test_move_digit_string_ids(self):
        """Ids sent as digit strings are accepted"""
        result = move_files(self.user.id, [str(self.a.id)], 'work')

        self.assertEqual(result.moved_count, 1)
        self.assertEqual(File.objects.get(pk=self.a.id).partition, 'work')

    def test_move_float_id_moves_nothing(self):
        """A fractional id is rejected, never truncated to a neighbouring file"""
        with self.assertRaises(InvalidArgument):
            move_files(self.user.id, [self.a.id + 0.9], 'work')

        self.assertEqual(File.objects.get(pk=self.a.id).partition, 'personal')
        self.assertEqual(self._partition('work').used, 0)

    def test_move_duplicate_ids(self):
        """Repeated ids are counted once"""
        result = move_files(self.user.id, [self.a.id, self.a.id], 'work')

        self.assertEqual(result.moved_count, 1)
        self.assertEqual(self._partition('work').used, 300 * MB)

    def test_move_files_already_in_target(self):
        """Files already in the target are left alone and not charged"""
        set_used(self.user, 'work', 0)
        w = make_file(self.user, 'work', size=100)
        set_used(self.user, 'work', 100)

        result = move_files(self.user.id, [self.a.id, w.id], 'work')

        self.assertEqual(result.moved_count, 1)
        self.assertEqual(result.unchanged_count, 1)
        self.assertEqual(result.total_size, 300 * MB)
        self.assertEqual(self._partition('work').used, 300 * MB + 100)

    def test_move_nothing_to_do(self):
        """A move where every file is already in place writes nothing"""
        result = move_files(self.user.id, [self.a.id], 'personal')

        self.assertEqual(result.moved_count, 0)
        self.assertEqual(result.unchanged_count, 1)
        self.assertEqual(self._partition('personal').used, 500 * MB)

    def test_move_from_dangling_partition(self):
        """A source partition that no longer exists is reported, the move still happens"""
        orphan = make_file(self.user, 'gone', size=50)

        with self.assertLogs('vault.partitions', level='WARNING'):
            result = move_files(self.user.id, [orphan.id], 'work')

        self.assertEqual(result.moved_count, 1)
        self.assertIn('gone', result.counter_errors)
        self.assertEqual(File.objects.get(pk=orphan.id).partition, 'work')
        self.assertEqual(self._partition('work').used, 50)

    def test_move_losing_race_rolls_back(self):
        """If the target fills up after the check, reassignment is undone"""
        denied = QuotaDecision(allowed=False, partition='work', quota=5 * GB, used=5 * GB, requested=500 * MB)

        with patch('vault.membership.reserve_quota', return_value=denied):
            with self.assertRaises(QuotaExceeded):
                move_files(self.user.id, [self.a.id, self.b.id], 'work')

        self.assertEqual(
            set(File.objects.filter(pk__in=[self.a.id, self.b.id]).values_list('partition', flat=True)),
            {'personal'}
        )
        self.assertEqual(self._partition('personal').used, 500 * MB)


class MoveFilesAPITests(APITestCase):
    """Tests for POST /api/partitions/move-files/"""

    def setUp(self):
        self.url = reverse('partition_move_files')
        self.user = create_user('testuser')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(self.user)}')
        self.file = make_file(self.user, 'personal', size=100)
        set_used(self.user, 'personal', 100)

    def test_move_files_endpoint(self):
        """The move endpoint accepts camelCase keys and returns the summary"""
        response = self.client.post(self.url, {'fileIds': [self.file.id], 'targetPartition': 'work'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['moved_count'], 1)
        self.assertEqual(response.data['total_size'], 100)
        self.assertEqual(response.data['target_partition'], 'work')
        self.assertEqual(partition_of(self.user, 'work').used, 100)
        self.assertEqual(partition_of(self.user, 'personal').used, 0)

    def test_move_files_snake_case(self):
        """snake_case keys work too"""
        response = self.client.post(self.url, {'file_ids': [self.file.id], 'target_partition': 'work'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_move_files_missing_target(self):
        """targetPartition is required"""
        response = self.client.post(self.url, {'fileIds': [self.file.id]}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'invalid_argument')

    def test_move_files_over_quota(self):
        """Quota failures include the numbers"""
        make_partition(self.user, 'small', quota=50)

        response = self.client.post(self.url, {'fileIds': [self.file.id], 'targetPartition': 'small'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'quota_exceeded')
        self.assertEqual(response.data['details']['requested'], 100)

    def test_move_files_forbidden(self):
        """Moving someone else's file is refused"""
        other = create_user('other')
        foreign = make_file(other, 'personal', size=10)

        response = self.client.post(self.url, {'fileIds': [foreign.id], 'targetPartition': 'work'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'forbidden')
        self.assertEqual(File.objects.get(pk=foreign.id).partition, 'personal')
