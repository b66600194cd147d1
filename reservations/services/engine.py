"""
Public slot operations: hold, release, book, cancel, block, unblock and
availability queries.

Each state-changing operation is one conditional transition in
:class:`~reservations.services.store.ReservationStore`.  A lost race
surfaces as ``ConflictError`` and is never retried here; the caller
re-queries availability and decides.  Only :meth:`SlotReservationEngine.cancel`
(and the expiry sweeper) hand freed slots to the waitlist coordinator.
"""
from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from reservations import metrics
from reservations.exceptions import ConflictError
from reservations.models import DoctorSchedule, ScheduleSlot
from reservations.services import slot_table
from reservations.services.store import (
    AVAILABLE,
    BLOCKED,
    BOOKED,
    HELD,
    HOLD_LIVE,
    ReservationStore,
    SlotState,
)
from reservations.signals import slot_booked, slot_cancelled

logger = logging.getLogger(__name__)


def _pk(obj):
    return getattr(obj, 'pk', obj)


@dataclass
class ScheduleAvailability:
    schedule: DoctorSchedule
    slots: list[ScheduleSlot] = field(default_factory=list)


class SlotReservationEngine:
    def __init__(self, store: Optional[ReservationStore] = None, coordinator=None):
        self.store = store or ReservationStore()
        self._coordinator = coordinator

    @property
    def coordinator(self):
        if self._coordinator is None:
            from reservations.services.waitlist import WaitlistCoordinator
            self._coordinator = WaitlistCoordinator(engine=self)
        return self._coordinator

    def _now(self, now):
        return now or self.store.clock()

    def hold_ttl(self, ttl=None) -> datetime.timedelta:
        if ttl is None:
            return datetime.timedelta(minutes=settings.SLOT_HOLD_TTL_MINUTES)
        if not isinstance(ttl, datetime.timedelta):
            ttl = datetime.timedelta(minutes=int(ttl))
        if ttl <= datetime.timedelta(0) or ttl > datetime.timedelta(minutes=settings.SLOT_HOLD_MAX_MINUTES):
            raise ValidationError({'ttlMinutes': f'hold must last between 1 and {settings.SLOT_HOLD_MAX_MINUTES} minutes'})
        return ttl

    def _apply(self, operation: str, doctor, date, time, expected, new_state, **kwargs) -> ScheduleSlot:
        try:
            slot = self.store.transition(doctor, date, time, expected, new_state=new_state, **kwargs)
        except ConflictError as exc:
            metrics.CONFLICTS.labels(operation=operation).inc()
            logger.info("%s rejected doctor=%s date=%s time=%s: %s", operation, _pk(doctor), date, time, exc.message)
            raise
        metrics.TRANSITIONS.labels(operation=operation).inc()
        logger.info("%s ok doctor=%s date=%s time=%s status=%s", operation, _pk(doctor), date, slot.time, slot.status)
        return slot

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------
    def hold(self, doctor, date: datetime.date, time, who, ttl=None, *,
             now: Optional[datetime.datetime] = None, reason: str = 'hold') -> ScheduleSlot:
        """Reserve a slot for ``who`` until ``now + ttl``.

        Re-holding a slot you already hold extends the hold.
        """
        ttl = self.hold_ttl(ttl)
        now = self._now(now)
        # Available (or a lapsed hold) first, then the caller's own live hold
        expected = [AVAILABLE, HELD]
        return self._apply(
            'hold', doctor, date, time, expected,
            SlotState.held(who, now + ttl),
            expected_holder=who, hold_state=HOLD_LIVE, actor=who, reason=reason, now=now,
        )

    def release(self, doctor, date: datetime.date, time, who, *,
                now: Optional[datetime.datetime] = None) -> ScheduleSlot:
        now = self._now(now)
        try:
            return self._apply(
                'release', doctor, date, time, HELD, SlotState.available(),
                expected_holder=who, actor=who, reason='released by holder', now=now,
            )
        except ConflictError:
            slot = slot_table.find(doctor, date, time)
            if slot.effective_status(now) == AVAILABLE:
                # already free: releasing again is a no-op
                return slot
            raise

    def book(self, doctor, date: datetime.date, time, who, appointment_ref: str, *,
             now: Optional[datetime.datetime] = None) -> ScheduleSlot:
        """Turn an Available slot, or the caller's own hold, into a booking."""
        if not appointment_ref:
            raise ValidationError({'appointmentRef': 'appointment reference is required'})
        now = self._now(now)
        slot = self._apply(
            'book', doctor, date, time, [AVAILABLE, HELD], SlotState.booked(appointment_ref),
            expected_holder=who, hold_state=HOLD_LIVE, actor=who, reason='booked', now=now,
        )
        transaction.on_commit(lambda: self._send(
            slot_booked,
            doctor_id=slot.schedule.doctor_id, date=slot.schedule.date, time=slot.time,
            appointment_ref=appointment_ref, patient_id=_pk(who),
        ))
        return slot

    def cancel(self, doctor, date: datetime.date, time, appointment_ref: str, *, actor=None,
               now: Optional[datetime.datetime] = None) -> ScheduleSlot:
        """Free a booked slot and offer it to the waitlist."""
        now = self._now(now)
        slot = self._apply(
            'cancel', doctor, date, time, BOOKED, SlotState.available(),
            expected_ref=appointment_ref, actor=actor, reason='appointment cancelled', now=now,
        )
        transaction.on_commit(lambda: self._send(
            slot_cancelled,
            doctor_id=slot.schedule.doctor_id, date=slot.schedule.date, time=slot.time,
            appointment_ref=appointment_ref,
        ))
        try:
            with transaction.atomic():
                self.coordinator.on_slot_freed(slot.schedule.doctor_id, slot.schedule.date, slot.time, now=now)
        except Exception:
            # the cancellation stands even when no offer could be made
            logger.exception("waitlist back-fill failed doctor=%s date=%s time=%s",
                             slot.schedule.doctor_id, slot.schedule.date, slot.time)
        return slot_table.find(doctor, date, time)

    def block(self, doctor, date: datetime.date, time, *, actor=None,
              now: Optional[datetime.datetime] = None) -> ScheduleSlot:
        return self._apply(
            'block', doctor, date, time, AVAILABLE, SlotState.blocked(),
            actor=actor, reason='blocked', now=self._now(now),
        )

    def unblock(self, doctor, date: datetime.date, time, *, actor=None,
                now: Optional[datetime.datetime] = None) -> ScheduleSlot:
        return self._apply(
            'unblock', doctor, date, time, BLOCKED, SlotState.available(),
            actor=actor, reason='unblocked', now=self._now(now),
        )

    @staticmethod
    def _send(signal, **kwargs) -> None:
        for receiver, result in signal.send_robust(sender=SlotReservationEngine, **kwargs):
            if isinstance(result, Exception):
                logger.error("receiver %r failed for %s: %s", receiver, kwargs.get('appointment_ref'), result)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def available_slots(self, *, doctor=None, specialization: Optional[str] = None,
                        department: Optional[str] = None, date: Optional[datetime.date] = None,
                        date_from: Optional[datetime.date] = None, date_to: Optional[datetime.date] = None,
                        now: Optional[datetime.datetime] = None) -> list[ScheduleAvailability]:
        """Active tables matching the filters with their currently bookable slots."""
        now = self._now(now)
        qs = DoctorSchedule.objects.filter(is_active=True).select_related('doctor')
        if doctor is not None:
            qs = qs.filter(doctor_id=_pk(doctor))
        if specialization:
            qs = qs.filter(doctor__specialization=specialization)
        if department:
            qs = qs.filter(department=department)
        if date:
            qs = qs.filter(date=date)
        else:
            if date_from is None and date_to is None:
                date_from = timezone.localdate(now)
            if date_from:
                qs = qs.filter(date__gte=date_from)
            if date_to:
                qs = qs.filter(date__lte=date_to)
        result = []
        for schedule in qs.prefetch_related('slots').order_by('date', 'doctor_id'):
            free = [s for s in schedule.slots.all() if s.effective_status(now) == AVAILABLE]
            result.append(ScheduleAvailability(schedule=schedule, slots=free))
        return result

    def doctor_schedule(self, doctor, *, date_from: Optional[datetime.date] = None,
                        date_to: Optional[datetime.date] = None) -> list[DoctorSchedule]:
        qs = DoctorSchedule.objects.filter(doctor_id=_pk(doctor)).select_related('doctor')
        if date_from:
            qs = qs.filter(date__gte=date_from)
        if date_to:
            qs = qs.filter(date__lte=date_to)
        return list(qs.prefetch_related('slots', 'slots__held_by').order_by('date'))
