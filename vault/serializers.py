from rest_framework import serializers
from rest_framework_simplejwt.tokens import RefreshToken
from rest_framework_simplejwt.exceptions import TokenError
from django.conf import settings
from django.contrib.auth import authenticate
from django.contrib.auth.password_validation import validate_password
from django.db import transaction
import hashlib
import json
import logging
import mimetypes
import os
from .models import DEFAULT_PARTITION, File, StoragePartition, User
from .partitions import normalize_partition_name, partition_exists
from .quota import check_quota, reserve_quota
from .storage import object_store

logger = logging.getLogger(__name__)

NEAR_LIMIT_RATIO = 0.8


def format_size(num_bytes):
    if num_bytes < 1024:
        return f'{num_bytes} B'
    if num_bytes < 1024 ** 2:
        return f'{num_bytes / 1024:.1f} KB'
    if num_bytes < 1024 ** 3:
        return f'{num_bytes / 1024 ** 2:.1f} MB'
    return f'{num_bytes / 1024 ** 3:.1f} GB'


def _user_payload(user):
    return {
        'id': user.id,
        'username': user.username,
        'email': user.email,
        'first_name': user.first_name,
        'last_name': user.last_name
    }


class UserRegistrationSerializer(serializers.ModelSerializer):
    password = serializers.CharField(write_only=True, validators=[validate_password])
    password_confirm = serializers.CharField(write_only=True)

    class Meta:
        model = User
        fields = ('id', 'username', 'email', 'password', 'password_confirm',
                 'first_name', 'last_name')

    def validate(self, attrs):
        if attrs['password'] != attrs['password_confirm']:
            raise serializers.ValidationError("Password fields didn't match.")
        return attrs

    def create(self, validated_data):
        validated_data.pop('password_confirm')
        # Default partitions are provisioned by the post_save signal
        return User.objects.create_user(**validated_data)

    def to_representation(self, instance):
        refresh = RefreshToken.for_user(instance)
        return {
            'user': _user_payload(instance),
            'partitions': PartitionSerializer(instance.storage_partitions.all(), many=True).data,
            'access': str(refresh.access_token),
            'refresh': str(refresh)
        }


class UserLoginSerializer(serializers.Serializer):
    username = serializers.CharField()
    password = serializers.CharField(write_only=True)

    def validate(self, attrs):
        user = authenticate(username=attrs.get('username'), password=attrs.get('password'))
        if not user:
            raise serializers.ValidationError('Invalid username or password.')
        if not user.is_active:
            raise serializers.ValidationError('User account is disabled.')

        refresh = RefreshToken.for_user(user)
        attrs['user'] = user
        attrs['access'] = str(refresh.access_token)
        attrs['refresh'] = str(refresh)
        return attrs

    def to_representation(self, instance):
        return {
            'user': _user_payload(instance['user']),
            'access': instance['access'],
            'refresh': instance['refresh']
        }


class LogoutSerializer(serializers.Serializer):
    refresh = serializers.CharField()

    def save(self, **kwargs):
        try:
            RefreshToken(self.validated_data['refresh']).blacklist()
        except TokenError:
            raise serializers.ValidationError({'refresh': 'Invalid or expired refresh token.'})


class PartitionSerializer(serializers.ModelSerializer):
    """
    A partition with its derived numbers (available space, percentage used,
    human-readable sizes).
    """
    available = serializers.IntegerField(read_only=True)
    is_default = serializers.BooleanField(read_only=True)
    usage_percentage = serializers.SerializerMethodField()
    quota_formatted = serializers.SerializerMethodField()
    used_formatted = serializers.SerializerMethodField()
    available_formatted = serializers.SerializerMethodField()

    class Meta:
        model = StoragePartition
        fields = ('name', 'quota', 'used', 'available', 'usage_percentage', 'is_default',
                  'quota_formatted', 'used_formatted', 'available_formatted', 'created_at')
        read_only_fields = fields

    def get_usage_percentage(self, obj):
        if not obj.quota:
            return 0.0
        return round(obj.used / obj.quota * 100, 2)

    def get_quota_formatted(self, obj):
        return format_size(obj.quota)

    def get_used_formatted(self, obj):
        return format_size(obj.used)

    def get_available_formatted(self, obj):
        return format_size(obj.available)


class PartitionUsageSerializer(serializers.ModelSerializer):
    """
    Partition plus a ``stats`` block. Expects ``file_counts`` (partition name
    -> live file count) in the serializer context.
    """
    stats = serializers.SerializerMethodField()

    class Meta:
        model = StoragePartition
        fields = ('name', 'quota', 'used', 'stats')
        read_only_fields = fields

    def get_stats(self, obj):
        ratio = obj.used / obj.quota if obj.quota else 0
        return {
            'total_files': self.context.get('file_counts', {}).get(obj.name, 0),
            'percentage_used': ratio,
            'formatted_used': format_size(obj.used),
            'formatted_quota': format_size(obj.quota),
            'is_near_limit': ratio >= NEAR_LIMIT_RATIO,
            'is_over_limit': ratio >= 1.0,
        }


class FileUploadSerializer(serializers.Serializer):
    file = serializers.FileField()
    tags = serializers.CharField(required=False, allow_blank=True)
    partition = serializers.CharField(required=False, allow_blank=True, max_length=50, default=DEFAULT_PARTITION)
    is_public = serializers.BooleanField(required=False, default=False)

    def validate_file(self, value):
        max_size_mb = settings.VAULT_MAX_FILE_SIZE_MB
        max_size = max_size_mb * 1024 * 1024
        if value.size > max_size:
            raise serializers.ValidationError(f'File size cannot exceed {max_size_mb}MB')
        return value

    def validate_tags(self, value):
        if not value:
            return []

        try:
            tags = json.loads(value)
        except json.JSONDecodeError:
            raise serializers.ValidationError('Tags must be valid JSON')

        if not isinstance(tags, list):
            raise serializers.ValidationError('Tags must be a JSON array')
        for tag in tags:
            if not isinstance(tag, str):
                raise serializers.ValidationError('Each tag must be a string')
            if not tag.strip():
                raise serializers.ValidationError('Tags cannot be empty strings')
            if len(tag) > 50:
                raise serializers.ValidationError('Each tag must be 50 characters or less')
        return tags

    def validate_partition(self, value):
        name = normalize_partition_name(value) or DEFAULT_PARTITION
        user = self.context['request'].user
        if not partition_exists(user.id, name):
            available = user.storage_partitions.values_list('name', flat=True)
            raise serializers.ValidationError(
                f"Partition '{name}' not found. Available partitions: {', '.join(available)}"
            )
        return name

    def create(self, validated_data):
        user = self.context['request'].user
        uploaded_file = validated_data['file']
        partition_name = validated_data.get('partition') or DEFAULT_PARTITION
        size = uploaded_file.size

        # Fail before anything is written to storage
        check_quota(user.id, partition_name, size).raise_if_denied()

        file_hash = hashlib.sha256()
        for chunk in uploaded_file.chunks():
            file_hash.update(chunk)
        uploaded_file.seek(0)

        mime_type, _ = mimetypes.guess_type(uploaded_file.name)
        filename = os.path.basename(uploaded_file.name)
        stored = object_store.upload(uploaded_file, object_store.make_key(user.id, filename))

        try:
            with transaction.atomic():
                user_file = File.objects.create(
                    user=user,
                    filename=os.path.basename(stored.key),
                    original_filename=filename,
                    mime_type=mime_type or uploaded_file.content_type,
                    size=size,
                    checksum=file_hash.hexdigest(),
                    partition=partition_name,
                    is_public=validated_data.get('is_public', False),
                    tags=validated_data.get('tags', []),
                    storage_key=stored.key,
                    storage_url=stored.url,
                )
                # A concurrent upload may have used the space since the check
                reserve_quota(user.id, partition_name, size).raise_if_denied()
        except Exception:
            # No record survived, so the stored object would be orphaned
            object_store.delete(stored.key)
            raise

        logger.info("User %s uploaded %s (%s bytes) to partition '%s'", user.id, filename, size, partition_name)
        return user_file

    def to_representation(self, instance):
        return FileSerializer(instance).data


class FileSerializer(serializers.ModelSerializer):

    class Meta:
        model = File
        fields = ('id', 'original_filename', 'filename', 'mime_type', 'size', 'checksum', 'partition',
                  'is_public', 'tags', 'is_deleted', 'deleted_at', 'created_at', 'updated_at')
        read_only_fields = fields


class FileDetailSerializer(FileSerializer):
    download_url = serializers.SerializerMethodField()

    class Meta(FileSerializer.Meta):
        fields = FileSerializer.Meta.fields + ('download_url',)
        read_only_fields = fields

    def get_download_url(self, obj):
        url = object_store.presign(obj.storage_key)
        request = self.context.get('request')
        return request.build_absolute_uri(url) if request else url


class UserProfileSerializer(serializers.ModelSerializer):
    """
    Profile for /api/users/me/. ``storage_quota`` and ``storage_used`` are
    totals across the user's partitions.
    """
    storage_quota = serializers.SerializerMethodField()
    storage_used = serializers.SerializerMethodField()
    partitions = PartitionSerializer(source='storage_partitions', many=True, read_only=True)

    class Meta:
        model = User
        fields = ('id', 'username', 'email', 'first_name', 'last_name',
                 'created_at', 'storage_quota', 'storage_used', 'partitions')
        read_only_fields = fields

    def get_storage_quota(self, obj):
        return sum(p.quota for p in obj.storage_partitions.all())

    def get_storage_used(self, obj):
        return sum(p.used for p in obj.storage_partitions.all())
