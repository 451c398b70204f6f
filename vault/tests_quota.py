"""
Quota gate tests

Covers the pure check, the atomic reservation and quota enforcement on
POST /api/files/upload/.
"""

from unittest.mock import patch

from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from .exceptions import InvalidArgument, PartitionNotFound, QuotaExceeded
from .models import File
from .quota import QuotaDecision, check_quota, reserve_quota
from .storage import object_store
from .testing import GB, TemporaryMediaMixin, access_token_for, create_user, make_partition, partition_of, set_used

MB = 1024 * 1024


class CheckQuotaTests(TestCase):

    def setUp(self):
        self.user = create_user('testuser')

    def test_check_quota_denied_with_numbers(self):
        """A 2GB request against 4GB used of 5GB is refused with the figures"""
        set_used(self.user, 'personal', 4 * GB)

        decision = check_quota(self.user.id, 'personal', 2 * GB)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.available, GB)
        self.assertEqual(decision.quota, 5 * GB)
        self.assertEqual(decision.used, 4 * GB)
        self.assertEqual(decision.requested, 2 * GB)
        # The check never writes
        self.assertEqual(partition_of(self.user, 'personal').used, 4 * GB)

    def test_check_quota_allowed(self):
        """A 500MB request against the same partition fits"""
        set_used(self.user, 'personal', 4 * GB)

        decision = check_quota(self.user.id, 'personal', 500 * MB)

        self.assertTrue(decision.allowed)
        self.assertIs(decision.raise_if_denied(), decision)

    def test_check_quota_exact_fit(self):
        """Filling the partition to exactly its quota is allowed"""
        make_partition(self.user, 'tiny', quota=1000, used=400)

        self.assertTrue(check_quota(self.user.id, 'tiny', 600).allowed)
        self.assertFalse(check_quota(self.user.id, 'tiny', 601).allowed)

    def test_check_quota_reports_available_bytes(self):
        """150 bytes into a 1000 byte partition holding 900 is refused with 100 available"""
        make_partition(self.user, 'projects', quota=1000, used=900)

        decision = check_quota(self.user.id, 'projects', 150)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.available, 100)
        self.assertEqual(decision.to_dict()['available'], 100)

    def test_zero_quota_partition_accepts_nothing(self):
        """A partition with quota 0 refuses every write"""
        make_partition(self.user, 'frozen', quota=0)

        self.assertFalse(check_quota(self.user.id, 'frozen', 1).allowed)

    def test_check_quota_invalid_sizes(self):
        """Sizes must be positive integers"""
        for size in [0, -1, 1.5, '100', None, True]:
            with self.subTest(size=size):
                with self.assertRaises(InvalidArgument):
                    check_quota(self.user.id, 'personal', size)

    def test_check_quota_missing_partition(self):
        """An unknown partition lists the ones that exist"""
        with self.assertRaises(PartitionNotFound) as ctx:
            check_quota(self.user.id, 'archive', 100)

        self.assertIn('personal', ctx.exception.message)
        self.assertIn('work', ctx.exception.message)

    def test_raise_if_denied(self):
        """A denied decision raises QuotaExceeded carrying its numbers"""
        decision = QuotaDecision(allowed=False, partition='personal', quota=5 * GB, used=4 * GB, requested=2 * GB)

        with self.assertRaises(QuotaExceeded) as ctx:
            decision.raise_if_denied()

        exc = ctx.exception
        self.assertEqual(exc.details, {
            'partition': 'personal',
            'available': GB,
            'quota': 5 * GB,
            'used': 4 * GB,
            'requested': 2 * GB,
        })
        self.assertIn('exceeds quota by 1024.00MB', exc.message)


class ReserveQuotaTests(TestCase):

    def setUp(self):
        self.user = create_user('testuser')
        make_partition(self.user, 'tiny', quota=1000, used=400)

    def test_reserve_charges_partition(self):
        """A successful reservation adds the size to usage"""
        decision = reserve_quota(self.user.id, 'tiny', 600)

        self.assertTrue(decision.allowed)
        self.assertEqual(decision.used, 1000)
        self.assertEqual(partition_of(self.user, 'tiny').used, 1000)

    def test_reserve_refused_writes_nothing(self):
        """A reservation that does not fit leaves usage untouched"""
        with self.assertLogs('vault.quota', level='WARNING'):
            decision = reserve_quota(self.user.id, 'tiny', 601)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.used, 400)
        self.assertEqual(partition_of(self.user, 'tiny').used, 400)

    def test_second_reservation_loses(self):
        """Two writers that both passed the check cannot both commit"""
        self.assertTrue(check_quota(self.user.id, 'tiny', 500).allowed)
        self.assertTrue(check_quota(self.user.id, 'tiny', 500).allowed)

        first = reserve_quota(self.user.id, 'tiny', 500)
        second = reserve_quota(self.user.id, 'tiny', 500)

        self.assertTrue(first.allowed)
        self.assertFalse(second.allowed)
        self.assertEqual(partition_of(self.user, 'tiny').used, 900)

    def test_reserve_missing_partition(self):
        """Reserving in an unknown partition fails with PartitionNotFound"""
        with self.assertRaises(PartitionNotFound):
            reserve_quota(self.user.id, 'nope', 10)


class UploadQuotaAPITests(TemporaryMediaMixin, APITestCase):
    """
    Quota enforcement on POST /api/files/upload/
    """

    def setUp(self):
        self.upload_url = reverse('file_upload')
        self.user = create_user('testuser')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(self.user)}')
        make_partition(self.user, 'tiny', quota=100)

    def _upload(self, size, partition='tiny', name='data.bin'):
        return self.client.post(self.upload_url, {
            'file': SimpleUploadedFile(name, b'x' * size, content_type='application/octet-stream'),
            'partition': partition,
        }, format='multipart')

    def test_upload_within_quota(self):
        """An upload that fits is stored and charged"""
        response = self._upload(60)

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['partition'], 'tiny')
        self.assertEqual(partition_of(self.user, 'tiny').used, 60)

    def test_upload_over_quota_rejected(self):
        """An upload that does not fit is rejected before it is stored"""
        set_used(self.user, 'tiny', 60)

        with patch.object(object_store, 'upload', wraps=object_store.upload) as upload:
            response = self._upload(41)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'quota_exceeded')
        self.assertEqual(response.data['details']['available'], 40)
        self.assertEqual(response.data['details']['requested'], 41)
        upload.assert_not_called()
        self.assertFalse(File.objects.filter(user=self.user).exists())
        self.assertEqual(partition_of(self.user, 'tiny').used, 60)

    def test_usage_never_exceeds_quota(self):
        """Repeated uploads stop at the quota"""
        statuses = [self._upload(30, name=f'f{i}.bin').status_code for i in range(5)]

        self.assertEqual(statuses[:3], [status.HTTP_201_CREATED] * 3)
        self.assertEqual(statuses[3:], [status.HTTP_400_BAD_REQUEST] * 2)
        partition = partition_of(self.user, 'tiny')
        self.assertEqual(partition.used, 90)
        self.assertLessEqual(partition.used, partition.quota)

    def test_upload_losing_race_is_rolled_back(self):
        """
        If the space is taken between the check and the charge, the file
        record is rolled back and the stored object removed
        """
        set_used(self.user, 'tiny', 90)
        allowed = QuotaDecision(allowed=True, partition='tiny', quota=100, used=0, requested=50)

        with patch('vault.serializers.check_quota', return_value=allowed), \
                patch.object(object_store, 'delete', wraps=object_store.delete) as delete:
            response = self._upload(50)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'quota_exceeded')
        self.assertFalse(File.objects.filter(user=self.user).exists())
        delete.assert_called_once()
        self.assertFalse(object_store.exists(delete.call_args.args[0]))
        self.assertEqual(partition_of(self.user, 'tiny').used, 90)
