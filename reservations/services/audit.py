"""
Audit trail for staff-visible actions: schedule publishing, waitlist
changes and the notifications sent to patients.  Slot state changes have
their own log in ``SlotTransition``.
"""
import logging
from typing import Any, Dict, Optional

from reservations.models import AuditEvent, User

logger = logging.getLogger(__name__)


def log_action(*, user: Optional[User], action: str, object_type: Optional[str] = None, object_id=None,
               detail: Optional[Dict[str, Any]] = None) -> AuditEvent:
    event = AuditEvent.objects.create(
        user=user if isinstance(user, User) and user.pk else None,
        action=action,
        object_type=object_type,
        object_id=str(object_id) if object_id is not None else None,
        detail=detail or {},
    )
    logger.debug("audit %s %s:%s by=%s", action, object_type, object_id, getattr(user, 'pk', None))
    return event


def history(object_type: str, object_id) -> list[AuditEvent]:
    return list(
        AuditEvent.objects.filter(object_type=object_type, object_id=str(object_id)).order_by('created_at', 'id')
    )
