"""
Fire-and-forget delivery of waitlist notifications.

Messages are pushed to the recipient's Channels group (``user.<id>``),
which :class:`reservations.realtime.consumers.NotificationsConsumer`
forwards to connected clients, and are recorded as audit events.  What
the patient is told beyond the slot details is up to the client.
"""
from __future__ import annotations

import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from reservations.services.audit import log_action

logger = logging.getLogger(__name__)


def user_group(user_id) -> str:
    return f"user.{user_id}"


def deliver(recipient, payload: dict) -> None:
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return
    async_to_sync(channel_layer.group_send)(user_group(recipient.pk), {"type": "notify.message", **payload})


def slot_payload(kind: str, entry, date, time, hold_expires_at=None) -> dict:
    return {
        "kind": kind,
        "waitlistId": entry.pk,
        "doctorId": entry.doctor_id,
        "date": date.isoformat(),
        "time": time,
        "holdExpiresAt": hold_expires_at.isoformat() if hold_expires_at else None,
    }


def notify_waitlist_offer(entry, slot) -> bool:
    """Tell a waitlisted patient a slot is being held for them.

    Never raises: a failed delivery must not undo the hold already granted.
    """
    payload = slot_payload('waitlist.offer', entry, slot.schedule.date, slot.time, slot.hold_expires_at)
    try:
        deliver(entry.patient, payload)
        log_action(user=entry.patient, action='waitlist_offer', object_type='waitlist', object_id=entry.pk, detail=payload)
    except Exception:
        logger.exception("waitlist offer delivery failed entry=%s patient=%s", entry.pk, entry.patient_id)
        return False
    return True


def notify_slot_available(entry, date, time, actor=None) -> bool:
    """Staff-triggered heads-up that a slot is open (no hold attached)."""
    payload = slot_payload('waitlist.slot_available', entry, date, time)
    try:
        deliver(entry.patient, payload)
        log_action(user=actor, action='waitlist_notify', object_type='waitlist', object_id=entry.pk, detail=payload)
    except Exception:
        logger.exception("waitlist notification failed entry=%s patient=%s", entry.pk, entry.patient_id)
        return False
    return True
