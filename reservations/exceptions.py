"""
Error taxonomy for the reservation engine and the unified API error envelope.

``ConflictError`` is the expected outcome of losing a race for a slot and
is returned to the caller as HTTP 409; callers re-query availability and
decide whether to retry.  ``PersistenceError`` wraps database failures so
user-facing operations fail closed with HTTP 503.
"""
from __future__ import annotations

import logging

from rest_framework.views import exception_handler as drf_exception_handler
from rest_framework.response import Response

logger = logging.getLogger(__name__)


class ReservationError(Exception):
    code = 'reservation_error'
    status_code = 400

    def __init__(self, message: str = '', **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


class ConflictError(ReservationError):
    """The persisted slot/entry state did not match the expected state."""
    code = 'conflict'
    status_code = 409


class NotFoundError(ReservationError):
    code = 'not_found'
    status_code = 404


class DuplicateScheduleError(ReservationError):
    code = 'duplicate_schedule'
    status_code = 409


class InvalidSlotSetError(ReservationError):
    code = 'invalid_slot_set'
    status_code = 400


class PersistenceError(ReservationError):
    """Transient store failure; never reported as success."""
    code = 'persistence_error'
    status_code = 503


def api_exception_handler(exc, context):
    if isinstance(exc, ReservationError):
        if isinstance(exc, PersistenceError):
            logger.error("persistence failure in %s: %s", _view_name(context), exc.message)
        return Response(
            {'ok': False, 'error': {'code': exc.code, 'message': exc.message}},
            status=exc.status_code,
        )
    resp = drf_exception_handler(exc, context)
    if resp is None:
        logger.exception("unhandled error in %s", _view_name(context), exc_info=exc)
        return Response({'ok': False, 'error': {'code': 'server_error', 'message': str(exc)}}, status=500)
    # normalize response
    detail = None
    if isinstance(resp.data, dict):
        detail = resp.data.get('detail') or resp.data
    else:
        detail = resp.data
    return Response({'ok': False, 'error': {'code': 'api_error', 'message': detail}}, status=resp.status_code)


def _view_name(context) -> str:
    view = (context or {}).get('view')
    return getattr(view, '__name__', None) or type(view).__name__ if view is not None else '?'
