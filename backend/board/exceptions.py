"""
Error taxonomy and the custom DRF exception handler.

ConflictError       - uniqueness violation in the record store. Recovered
                      locally by identity resolution, never shown to users.
TransientStoreError - store/media backend unavailable. Identity resolution
                      degrades to the fallback id; mutations report it (503).
ValidationError     - bad input, rejected before any store call (400).
IdentityRequiredError - mutation from a device with no anonymous id (403).
EntityNotFoundError   - reacting/commenting on something that's gone (404).
"""
from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status
from django.db import IntegrityError
import logging

logger = logging.getLogger(__name__)


class BoardError(Exception):
    """Base exception for all confession board errors."""

    def __init__(self, message: str = "An error occurred on the board"):
        self.message = message
        super().__init__(self.message)


class ConflictError(BoardError):
    """A row with the same unique key already exists."""

    def __init__(self, message: str = "Record already exists"):
        super().__init__(message)


class TransientStoreError(BoardError):
    """The record store or media store could not be reached."""

    def __init__(self, message: str = "Storage is temporarily unavailable"):
        super().__init__(message)


class IdentityRequiredError(BoardError):
    """The device has not resolved an anonymous identity yet."""

    def __init__(self, message: str = "Anonymous identity not initialized"):
        super().__init__(message)


class EntityNotFoundError(BoardError):
    """A confession or comment that does not exist."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class ValidationError(BoardError):
    """Input rejected before touching the store."""

    def __init__(self, message: str = "Invalid input", field: str = None):
        self.field = field
        super().__init__(message)


def custom_exception_handler(exc, context):
    """
    Custom exception handler that:
    1. Logs all exceptions
    2. Converts board and Django exceptions to DRF responses
    3. Provides consistent error format
    """
    response = exception_handler(exc, context)

    if response is not None:
        if not isinstance(response.data, dict) or 'error' not in response.data:
            response.data = {
                'error': str(exc),
                'details': response.data
            }
        return response

    if isinstance(exc, ValidationError):
        data = {'error': exc.message}
        if exc.field:
            data['details'] = {exc.field: [exc.message]}
        return Response(data, status=status.HTTP_400_BAD_REQUEST)

    if isinstance(exc, IdentityRequiredError):
        return Response({'error': exc.message}, status=status.HTTP_403_FORBIDDEN)

    if isinstance(exc, EntityNotFoundError):
        return Response({'error': exc.message}, status=status.HTTP_404_NOT_FOUND)

    if isinstance(exc, (ConflictError, IntegrityError)):
        logger.warning(f"Conflict: {exc}")
        return Response(
            {'error': 'Data integrity error. This may be a duplicate entry.'},
            status=status.HTTP_409_CONFLICT
        )

    if isinstance(exc, TransientStoreError):
        logger.error(f"Store unavailable: {exc}")
        return Response(
            {'error': 'The board is temporarily unavailable. Please try again.'},
            status=status.HTTP_503_SERVICE_UNAVAILABLE
        )

    if isinstance(exc, ValueError):
        return Response(
            {'error': str(exc)},
            status=status.HTTP_400_BAD_REQUEST
        )

    logger.exception(f"Unhandled exception: {exc}")

    return Response(
        {'error': 'An unexpected error occurred.'},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR
    )
