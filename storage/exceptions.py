import logging

from django.db import DatabaseError
from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


class KeyNotFound(LookupError):
    """Raised by the engine when a key has no live entry."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Key not found: {key!r}")


class StorageError(APIException):
    """Any engine failure other than a missing key."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Storage engine error."
    default_code = "storage_error"


def exception_handler(exc, context):
    """
    DRF exception handler that keeps every API failure in JSON.

    Raw database errors that escaped the engine adapter are reported as
    storage errors instead of falling through to Django's HTML 500 page.
    """
    if isinstance(exc, DatabaseError):
        exc = StorageError(str(exc))

    if isinstance(exc, StorageError):
        view = context.get("view")
        logger.error(f"Storage error in {type(view).__name__}: {exc.detail}")

    response = drf_exception_handler(exc, context)
    if response is None and isinstance(exc, KeyNotFound):
        response = Response({"detail": "Key not found"}, status=status.HTTP_404_NOT_FOUND)
    return response
