"""
Error types raised by the partition services, and the DRF exception handler
that renders them.

The services raise these plain exceptions and never build HTTP responses
themselves. ``exception_handler`` turns them into
``{"error": ..., "code": ..., "details": {...}}`` responses.
"""

import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class PartitionError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = 'partition_error'

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self):
        data = {'error': self.message, 'code': self.code}
        if self.details:
            data['details'] = self.details
        return data


class InvalidArgument(PartitionError):
    code = 'invalid_argument'


class NotFound(PartitionError):
    status_code = status.HTTP_404_NOT_FOUND
    code = 'not_found'


class PartitionNotFound(NotFound):
    code = 'partition_not_found'

    def __init__(self, name, available=None):
        message = f"Partition '{name}' not found"
        if available is not None:
            message += f". Available partitions: {', '.join(available)}"
        super().__init__(message, {'partition': name})
        self.partition = name


class Conflict(PartitionError):
    code = 'conflict'


class LimitExceeded(PartitionError):
    code = 'limit_exceeded'


class Forbidden(PartitionError):
    code = 'forbidden'


class QuotaExceeded(PartitionError):
    """
    A write would push a partition past its quota. Carries the numbers a
    client needs to say by how much.
    """
    code = 'quota_exceeded'

    def __init__(self, partition, quota, used, requested):
        available = max(0, quota - used)
        overflow = requested - available
        message = (
            f"Quota exceeded for partition '{partition}'. "
            f"Requested {requested / MB:.2f}MB, available {available / MB:.2f}MB "
            f"of {quota / MB:.2f}MB (exceeds quota by {overflow / MB:.2f}MB)"
        )
        super().__init__(message, {
            'partition': partition,
            'available': available,
            'quota': quota,
            'used': used,
            'requested': requested,
        })
        self.partition = partition
        self.quota = quota
        self.used = used
        self.requested = requested
        self.available = available


def exception_handler(exc, context):
    if isinstance(exc, PartitionError):
        logger.info("Rejected %s request: %s", context['request'].method, exc.message)
        return Response(exc.to_dict(), status=exc.status_code)
    return drf_exception_handler(exc, context)
