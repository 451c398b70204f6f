import logging

from django.db import transaction
from django.db.models import Count, Q, Sum
from django.http import FileResponse
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework_simplejwt.views import TokenRefreshView

from .exceptions import InvalidArgument
from .lifecycle import delete_partition
from .membership import move_files
from .models import DEFAULT_PARTITION, File
from .partitions import (
    create_partition,
    decrement_used,
    get_partition,
    list_partitions,
    partition_exists,
    update_quota,
)
from .quota import reserve_quota
from .reconciliation import reconcile_all_partitions, reconcile_partition
from .serializers import (
    FileDetailSerializer,
    FileSerializer,
    FileUploadSerializer,
    LogoutSerializer,
    PartitionSerializer,
    PartitionUsageSerializer,
    UserLoginSerializer,
    UserProfileSerializer,
    UserRegistrationSerializer,
)
from .storage import object_store

logger = logging.getLogger(__name__)


@api_view(['POST'])
@permission_classes([AllowAny])
def register(request):
    """
    Register a new user account
    """
    serializer = UserRegistrationSerializer(data=request.data)
    if serializer.is_valid():
        user = serializer.save()
        return Response(serializer.to_representation(user), status=status.HTTP_201_CREATED)
    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


@api_view(['POST'])
@permission_classes([AllowAny])
def login(request):
    """
    Authenticate user and get JWT tokens
    """
    serializer = UserLoginSerializer(data=request.data)
    if serializer.is_valid():
        return Response(serializer.to_representation(serializer.validated_data), status=status.HTTP_200_OK)
    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def logout(request):
    """
    Blacklist refresh token (logout)
    """
    serializer = LogoutSerializer(data=request.data)
    if serializer.is_valid():
        serializer.save()
        return Response(status=status.HTTP_205_RESET_CONTENT)
    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


token_refresh = TokenRefreshView.as_view()


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def user_profile(request):
    """
    Get current user's profile, with storage totals across partitions
    """
    serializer = UserProfileSerializer(request.user)
    return Response(serializer.data)


# Files

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def file_upload(request):
    """
    Upload a new file into a partition (``personal`` unless given).
    Rejected before storage is touched if the partition has no room.
    """
    serializer = FileUploadSerializer(data=request.data, context={'request': request})
    if serializer.is_valid():
        user_file = serializer.save()
        return Response(serializer.to_representation(user_file), status=status.HTTP_201_CREATED)
    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


class FileListPagination(PageNumberPagination):
    page_size = 20
    page_size_query_param = 'page_size'
    max_page_size = 100


FILE_ORDERING = {
    'created_at', '-created_at',
    'original_filename', '-original_filename',
    'size', '-size',
}


def _int_param(request, name):
    value = request.GET.get(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _filter_files(request, queryset):
    search = request.GET.get('search')
    if search:
        queryset = queryset.filter(Q(original_filename__icontains=search) | Q(tags__icontains=search))

    partition = request.GET.get('partition')
    if partition:
        queryset = queryset.filter(partition=partition.strip().lower())

    tag_filter = request.GET.get('tags')
    if tag_filter:
        queryset = queryset.filter(tags__icontains=tag_filter)

    filename_filter = request.GET.get('filename')
    if filename_filter:
        queryset = queryset.filter(original_filename__icontains=filename_filter)

    mime_type_filter = request.GET.get('mime_type')
    if mime_type_filter:
        queryset = queryset.filter(mime_type=mime_type_filter)

    size_min = _int_param(request, 'size_min')
    if size_min is not None:
        queryset = queryset.filter(size__gte=size_min)
    size_max = _int_param(request, 'size_max')
    if size_max is not None:
        queryset = queryset.filter(size__lte=size_max)

    # parse_datetime returns None for malformed input and raises for out-of-range values
    for param, lookup in (('uploaded_after', 'created_at__gte'), ('uploaded_before', 'created_at__lte')):
        value = request.GET.get(param)
        if value:
            try:
                moment = parse_datetime(value)
            except ValueError:
                moment = None
            if moment:
                queryset = queryset.filter(**{lookup: moment})

    ordering = request.GET.get('ordering', '-created_at')
    if ordering not in FILE_ORDERING:
        ordering = '-created_at'
    return queryset.order_by(ordering, '-id')


def _paginated(request, queryset):
    paginator = FileListPagination()
    page = paginator.paginate_queryset(queryset, request)
    if page is not None:
        return paginator.get_paginated_response(FileSerializer(page, many=True).data)
    return Response(FileSerializer(queryset, many=True).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def file_list(request):
    """
    List user's files with search, filtering and partition selection
    """
    queryset = File.objects.filter(user=request.user, is_deleted=False)
    return _paginated(request, _filter_files(request, queryset))


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def trash_list(request):
    """
    List soft-deleted files
    """
    queryset = File.objects.filter(user=request.user, is_deleted=True).order_by('-deleted_at', '-id')
    return _paginated(request, queryset)


def _get_user_file(request, file_id, deleted=False):
    try:
        return File.objects.get(id=file_id, user=request.user, is_deleted=deleted)
    except File.DoesNotExist:
        return None


def _file_not_found():
    return Response({'error': 'File not found'}, status=status.HTTP_404_NOT_FOUND)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def file_detail(request, file_id):
    """
    Get detailed information about a specific file
    """
    user_file = _get_user_file(request, file_id)
    if user_file is None:
        return _file_not_found()
    return Response(FileDetailSerializer(user_file, context={'request': request}).data)


@api_view(['DELETE'])
@permission_classes([IsAuthenticated])
def file_delete(request, file_id):
    """
    Move a file to the trash and release its bytes from the partition.

    The counter update is best effort: if it fails the delete still
    succeeds and the drift is left for reconciliation.
    """
    user_file = _get_user_file(request, file_id)
    if user_file is None:
        return _file_not_found()

    now = timezone.now()
    # Only the request that flips the flag releases the bytes
    trashed = File.objects.filter(pk=user_file.pk, is_deleted=False).update(
        is_deleted=True, deleted_at=now, updated_at=now,
    )
    if not trashed:
        return _file_not_found()

    update = decrement_used(request.user.id, user_file.partition, user_file.size)
    if not update.ok:
        logger.warning(
            "File %s deleted but partition '%s' usage was not updated: %s",
            user_file.id, user_file.partition, update.error,
        )
    return Response(status=status.HTTP_204_NO_CONTENT)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def file_restore(request, file_id):
    """
    Bring a file back from the trash. Falls back to ``personal`` when its
    partition no longer exists; the target must have room for it.
    """
    user_file = _get_user_file(request, file_id, deleted=True)
    if user_file is None:
        return _file_not_found()

    target = user_file.partition
    if not partition_exists(request.user.id, target):
        target = DEFAULT_PARTITION

    with transaction.atomic():
        if user_file.size:
            reserve_quota(request.user.id, target, user_file.size).raise_if_denied()
        else:
            get_partition(request.user.id, target)
        user_file.partition = target
        user_file.is_deleted = False
        user_file.deleted_at = None
        user_file.save(update_fields=['partition', 'is_deleted', 'deleted_at', 'updated_at'])

    return Response(FileSerializer(user_file).data)


@api_view(['DELETE'])
@permission_classes([IsAuthenticated])
def file_permanent_delete(request, file_id):
    """
    Permanently remove a trashed file and its stored object. Usage was
    already released when it was trashed.
    """
    user_file = _get_user_file(request, file_id, deleted=True)
    if user_file is None:
        return _file_not_found()

    storage_key = user_file.storage_key
    user_file.delete()
    # A storage failure leaves an orphaned object, never an orphaned record
    object_store.delete(storage_key)
    return Response(status=status.HTTP_204_NO_CONTENT)


def _file_response(user_file):
    if not object_store.exists(user_file.storage_key):
        return Response({'error': 'File not found in storage'}, status=status.HTTP_404_NOT_FOUND)

    response = FileResponse(
        object_store.open(user_file.storage_key),
        content_type=user_file.mime_type or 'application/octet-stream'
    )
    response['Content-Disposition'] = f'attachment; filename="{user_file.original_filename}"'
    response['Content-Length'] = user_file.size
    return response


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def file_download(request, file_id):
    """
    Download file content
    """
    user_file = _get_user_file(request, file_id)
    if user_file is None:
        return _file_not_found()
    return _file_response(user_file)


@api_view(['GET'])
@permission_classes([AllowAny])
def file_signed_download(request, token):
    """
    Download through a presigned link; no bearer token needed
    """
    storage_key = object_store.resolve_presigned(token)
    user_file = File.objects.filter(storage_key=storage_key, is_deleted=False).first()
    if user_file is None:
        return _file_not_found()
    return _file_response(user_file)


# Partitions

@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def partition_list(request):
    """
    GET: all partitions of the user with computed stats.
    POST: create a partition from ``{name, quota}``.
    """
    if request.method == 'POST':
        partition = create_partition(request.user.id, request.data.get('name'), request.data.get('quota'))
        return Response(PartitionSerializer(partition).data, status=status.HTTP_201_CREATED)

    partitions = list_partitions(request.user.id)
    return Response(PartitionSerializer(partitions, many=True).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def partition_usage(request):
    """
    Usage statistics for every partition plus totals
    """
    partitions = list_partitions(request.user.id)
    live_files = File.objects.filter(user=request.user, is_deleted=False)
    file_counts = dict(
        live_files.values('partition').annotate(count=Count('id')).values_list('partition', 'count')
    )
    serializer = PartitionUsageSerializer(partitions, many=True, context={'file_counts': file_counts})
    return Response({
        'partitions': serializer.data,
        'total_used': sum(p.used for p in partitions),
        'total_quota': sum(p.quota for p in partitions),
        'total_files': live_files.count(),
    })


@api_view(['GET', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def partition_detail(request, partition_name):
    """
    GET: partition details with file counts and a per-mimetype breakdown.
    PATCH: change the quota (never below current usage).
    DELETE: remove the partition; ``?force=true`` for non-empty or default ones.
    """
    user_id = request.user.id

    if request.method == 'PATCH':
        partition = update_quota(user_id, partition_name, request.data.get('quota'))
        return Response(PartitionSerializer(partition).data)

    if request.method == 'DELETE':
        force = request.query_params.get('force', '').lower() == 'true'
        result = delete_partition(user_id, partition_name, force=force)
        return Response(result.to_dict())

    partition = get_partition(user_id, partition_name)
    files = File.objects.filter(user_id=user_id, partition=partition.name)
    live_files = files.filter(is_deleted=False)
    file_types = (
        live_files.values('mime_type')
        .annotate(count=Count('id'), total_size=Sum('size'))
        .order_by('-count', 'mime_type')
    )

    data = PartitionSerializer(partition).data
    data.update({
        'file_count': live_files.count(),
        'trashed_file_count': files.filter(is_deleted=True).count(),
        'file_types': [
            {'mime_type': ft['mime_type'], 'count': ft['count'], 'total_size': ft['total_size']}
            for ft in file_types
        ],
    })
    return Response(data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def partition_move_files(request):
    """
    Move files into ``targetPartition``; all or nothing
    """
    target = request.data.get('targetPartition', request.data.get('target_partition'))
    if not target or not isinstance(target, str):
        raise InvalidArgument('targetPartition is required')
    file_ids = request.data.get('fileIds', request.data.get('file_ids'))
    result = move_files(request.user.id, file_ids, target)
    return Response(result.to_dict())


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def partition_reconcile_all(request):
    """
    Recompute usage of every partition from the files table
    """
    report = reconcile_all_partitions(request.user.id)
    return Response(report.to_dict())


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def partition_reconcile(request, partition_name):
    """
    Recompute one partition's usage from the files table
    """
    result = reconcile_partition(request.user.id, partition_name)
    return Response({
        'partition': result.partition,
        'previous_used': result.previous_used,
        'computed_used': result.computed_used,
        'drift': result.drift,
    })
