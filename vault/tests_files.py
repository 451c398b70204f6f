"""
File lifecycle tests

Covers upload into partitions, listing, trash and restore, permanent
deletion and downloads:
- POST /api/files/upload/
- GET /api/files/, GET /api/files/trash/
- GET /api/files/<id>/
- DELETE /api/files/<id>/delete/, POST /api/files/<id>/restore/
- DELETE /api/files/<id>/permanent/
- GET /api/files/<id>/download/, GET /api/files/signed/<token>/
"""

import hashlib
import json
from datetime import timedelta
from unittest.mock import patch

from django.core.files.uploadedfile import SimpleUploadedFile
from django.db import DatabaseError
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from .models import File, StoragePartition
from .storage import object_store
from .testing import TemporaryMediaMixin, access_token_for, create_user, make_file, make_partition, partition_of, set_used


class FileUploadAPITests(TemporaryMediaMixin, APITestCase):
    """
    Test suite for POST /api/files/upload/
    """

    def setUp(self):
        self.upload_url = reverse('file_upload')
        self.user = create_user('testuser')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(self.user)}')
        self.content = b"This is a test file content for upload testing."

    def _test_file(self, name='test.txt'):
        return SimpleUploadedFile(name, self.content, content_type='text/plain')

    def test_file_upload_success(self):
        """Test an upload lands in personal by default and is charged there"""
        response = self.client.post(self.upload_url, {
            'file': self._test_file(),
            'tags': json.dumps(['test', 'document']),
        }, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['original_filename'], 'test.txt')
        self.assertEqual(response.data['partition'], 'personal')
        self.assertEqual(response.data['size'], len(self.content))
        self.assertEqual(response.data['mime_type'], 'text/plain')
        self.assertEqual(response.data['tags'], ['test', 'document'])
        self.assertEqual(response.data['checksum'], hashlib.sha256(self.content).hexdigest())

        user_file = File.objects.get(pk=response.data['id'])
        self.assertTrue(object_store.exists(user_file.storage_key))
        self.assertEqual(partition_of(self.user, 'personal').used, len(self.content))
        self.assertEqual(partition_of(self.user, 'work').used, 0)

    def test_file_upload_to_partition(self):
        """Test the partition field selects the target, case-insensitively"""
        response = self.client.post(self.upload_url, {'file': self._test_file(), 'partition': 'WORK'}, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['partition'], 'work')
        self.assertEqual(partition_of(self.user, 'work').used, len(self.content))

    def test_file_upload_database_error_removes_object(self):
        """Test a failed record insert does not leave the stored object behind"""
        with patch.object(File.objects, 'create', side_effect=DatabaseError('disk full')), \
                patch.object(object_store, 'delete', wraps=object_store.delete) as delete:
            with self.assertRaises(DatabaseError):
                self.client.post(self.upload_url, {'file': self._test_file()}, format='multipart')

        delete.assert_called_once()
        self.assertFalse(object_store.exists(delete.call_args.args[0]))
        self.assertEqual(partition_of(self.user, 'personal').used, 0)

    def test_file_upload_unknown_partition(self):
        """Test uploading to a partition that does not exist"""
        response = self.client.post(self.upload_url, {'file': self._test_file(), 'partition': 'archive'}, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('partition', response.data)
        self.assertIn('personal', str(response.data['partition'][0]))
        self.assertFalse(File.objects.exists())

    def test_file_upload_invalid_tags(self):
        """Test tags must be a JSON array of strings"""
        for tags in ['not json', json.dumps({'a': 1}), json.dumps([1, 2])]:
            with self.subTest(tags=tags):
                response = self.client.post(self.upload_url, {'file': self._test_file(), 'tags': tags}, format='multipart')
                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
                self.assertIn('tags', response.data)

    def test_file_upload_missing_file(self):
        """Test the file field is required"""
        response = self.client.post(self.upload_url, {'partition': 'work'}, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('file', response.data)

    def test_file_upload_unauthenticated(self):
        """Test upload requires a token"""
        response = APIClient().post(self.upload_url, {'file': self._test_file()}, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)


class FileListAPITests(APITestCase):
    """
    Test suite for GET /api/files/ and GET /api/files/trash/
    """

    def setUp(self):
        self.list_url = reverse('file_list')
        self.trash_url = reverse('trash_list')
        self.user = create_user('testuser')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(self.user)}')

        self.report = make_file(self.user, 'work', size=500, mime_type='application/pdf', name='report.pdf')
        self.notes = make_file(self.user, 'personal', size=50, name='notes.txt')
        self.photo = make_file(self.user, 'personal', size=5000, mime_type='image/jpeg', name='photo.jpg')
        self.old = make_file(self.user, 'personal', size=10, name='old.txt', deleted=True)
        File.objects.filter(pk=self.report.pk).update(tags=['quarterly', 'finance'])

    def _names(self, response):
        return sorted(f['original_filename'] for f in response.data['results'])

    def test_file_list_success(self):
        """Test listing returns live files only"""
        response = self.client.get(self.list_url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 3)
        self.assertEqual(self._names(response), ['notes.txt', 'photo.jpg', 'report.pdf'])

    def test_file_list_user_isolation(self):
        """Test users never see each other's files"""
        make_file(create_user('other'), 'personal', name='secret.txt')

        response = self.client.get(self.list_url)

        self.assertNotIn('secret.txt', self._names(response))

    def test_file_list_filter_by_partition(self):
        """Test the partition filter"""
        response = self.client.get(self.list_url, {'partition': 'Work'})

        self.assertEqual(self._names(response), ['report.pdf'])

    def test_file_list_search(self):
        """Test search matches filenames and tags"""
        self.assertEqual(self._names(self.client.get(self.list_url, {'search': 'NOTES'})), ['notes.txt'])
        self.assertEqual(self._names(self.client.get(self.list_url, {'search': 'finance'})), ['report.pdf'])

    def test_file_list_filter_by_mime_type_and_size(self):
        """Test mime type and size range filters"""
        self.assertEqual(self._names(self.client.get(self.list_url, {'mime_type': 'image/jpeg'})), ['photo.jpg'])
        self.assertEqual(
            self._names(self.client.get(self.list_url, {'size_min': 100, 'size_max': 1000})),
            ['report.pdf']
        )

    def test_file_list_invalid_filters_are_ignored(self):
        """Test malformed numbers and dates do not filter"""
        response = self.client.get(self.list_url, {'size_min': 'abc', 'uploaded_after': 'yesterday'})

        self.assertEqual(response.data['count'], 3)

    def test_file_list_filter_by_upload_date(self):
        """Test the upload date filters"""
        File.objects.filter(pk=self.photo.pk).update(created_at=timezone.now() - timedelta(days=10))
        cutoff = (timezone.now() - timedelta(days=1)).isoformat()

        response = self.client.get(self.list_url, {'uploaded_before': cutoff})

        self.assertEqual(self._names(response), ['photo.jpg'])

    def test_file_list_ordering(self):
        """Test ordering by size"""
        response = self.client.get(self.list_url, {'ordering': 'size'})

        self.assertEqual([f['size'] for f in response.data['results']], [50, 500, 5000])

    def test_file_list_pagination(self):
        """Test page_size is honoured"""
        response = self.client.get(self.list_url, {'page_size': 2})

        self.assertEqual(response.data['count'], 3)
        self.assertEqual(len(response.data['results']), 2)
        self.assertIsNotNone(response.data['next'])

    def test_trash_list(self):
        """Test the trash lists soft-deleted files only"""
        response = self.client.get(self.trash_url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(self._names(response), ['old.txt'])

    def test_file_detail(self):
        """Test detail carries a presigned download link"""
        response = self.client.get(reverse('file_detail', kwargs={'file_id': self.report.id}))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['partition'], 'work')
        self.assertIn('/api/files/signed/', response.data['download_url'])

    def test_file_detail_not_found(self):
        """Test trashed and foreign files are not visible"""
        other_file = make_file(create_user('other'), 'personal')

        for file_id in [self.old.id, other_file.id, 999999]:
            with self.subTest(file_id=file_id):
                response = self.client.get(reverse('file_detail', kwargs={'file_id': file_id}))
                self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class FileTrashAPITests(APITestCase):
    """
    Test suite for soft delete, restore and permanent delete
    """

    def setUp(self):
        self.user = create_user('testuser')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(self.user)}')
        make_partition(self.user, 'projects', quota=1000)
        self.file = make_file(self.user, 'projects', size=400)
        set_used(self.user, 'projects', 400)

    def _delete(self, file_id):
        return self.client.delete(reverse('file_delete', kwargs={'file_id': file_id}))

    def _restore(self, file_id):
        return self.client.post(reverse('file_restore', kwargs={'file_id': file_id}))

    def test_delete_releases_usage(self):
        """Test a soft delete trashes the file and releases its bytes"""
        response = self._delete(self.file.id)

        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.file.refresh_from_db()
        self.assertTrue(self.file.is_deleted)
        self.assertIsNotNone(self.file.deleted_at)
        self.assertEqual(partition_of(self.user, 'projects').used, 0)

    def test_delete_twice(self):
        """Test a trashed file cannot be deleted again"""
        self._delete(self.file.id)

        response = self._delete(self.file.id)

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(partition_of(self.user, 'projects').used, 0)

    def test_delete_already_trashed_by_concurrent_request(self):
        """Test a delete that lost the race does not release the bytes a second time"""
        stale = File.objects.get(pk=self.file.id)
        self._delete(self.file.id)
        set_used(self.user, 'projects', 250)

        with patch('vault.views._get_user_file', return_value=stale):
            response = self._delete(self.file.id)

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(partition_of(self.user, 'projects').used, 250)

    def test_delete_with_missing_partition_still_succeeds(self):
        """Test the delete wins even if the counter cannot be updated"""
        orphan = make_file(self.user, 'gone', size=10)

        with self.assertLogs('vault', level='WARNING'):
            response = self._delete(orphan.id)

        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertTrue(File.objects.get(pk=orphan.id).is_deleted)

    def test_restore_charges_usage(self):
        """Test restoring puts the bytes back on the partition"""
        self._delete(self.file.id)

        response = self._restore(self.file.id)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data['is_deleted'])
        self.assertEqual(response.data['partition'], 'projects')
        self.assertEqual(partition_of(self.user, 'projects').used, 400)

    def test_restore_over_quota(self):
        """Test a restore that no longer fits is refused"""
        self._delete(self.file.id)
        set_used(self.user, 'projects', 700)

        response = self._restore(self.file.id)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'quota_exceeded')
        self.assertTrue(File.objects.get(pk=self.file.id).is_deleted)
        self.assertEqual(partition_of(self.user, 'projects').used, 700)

    def test_restore_into_personal_when_partition_gone(self):
        """Test files of a deleted partition come back in personal"""
        self._delete(self.file.id)
        StoragePartition.objects.filter(user=self.user, name='projects').delete()

        response = self._restore(self.file.id)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['partition'], 'personal')
        self.assertEqual(partition_of(self.user, 'personal').used, 400)

    def test_restore_live_file(self):
        """Test only trashed files can be restored"""
        response = self._restore(self.file.id)

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_permanent_delete(self):
        """Test permanent delete removes the record and the stored object"""
        self._delete(self.file.id)

        with patch.object(object_store, 'delete', return_value=True) as delete:
            response = self.client.delete(reverse('file_permanent_delete', kwargs={'file_id': self.file.id}))

        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(File.objects.filter(pk=self.file.id).exists())
        delete.assert_called_once_with(self.file.storage_key)
        self.assertEqual(partition_of(self.user, 'projects').used, 0)

    def test_permanent_delete_requires_trash(self):
        """Test live files must be trashed first"""
        response = self.client.delete(reverse('file_permanent_delete', kwargs={'file_id': self.file.id}))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertTrue(File.objects.filter(pk=self.file.id).exists())


class FileDownloadAPITests(TemporaryMediaMixin, APITestCase):
    """
    Test suite for direct and presigned downloads
    """

    def setUp(self):
        self.user = create_user('testuser')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(self.user)}')
        response = self.client.post(reverse('file_upload'), {
            'file': SimpleUploadedFile('hello.txt', b'hello world', content_type='text/plain'),
        }, format='multipart')
        self.file = File.objects.get(pk=response.data['id'])

    def test_file_download(self):
        """Test downloading returns the stored bytes"""
        response = self.client.get(reverse('file_download', kwargs={'file_id': self.file.id}))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(b''.join(response.streaming_content), b'hello world')
        self.assertIn('hello.txt', response['Content-Disposition'])

    def test_file_download_missing_object(self):
        """Test a record whose object is gone returns 404"""
        orphan = make_file(self.user, 'personal', size=5)

        response = self.client.get(reverse('file_download', kwargs={'file_id': orphan.id}))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_signed_download_without_token(self):
        """Test a presigned link works without authentication"""
        url = object_store.presign(self.file.storage_key)

        response = APIClient().get(url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(b''.join(response.streaming_content), b'hello world')

    def test_signed_download_expired(self):
        """Test an expired link is refused"""
        url = object_store.presign(self.file.storage_key, ttl=-1)

        response = APIClient().get(url)

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_signed_download_tampered(self):
        """Test a forged token is refused"""
        url = reverse('file_signed_download', kwargs={'token': 'forged-token'})

        response = APIClient().get(url)

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
