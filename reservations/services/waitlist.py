"""
Waitlist: patients queue for a doctor and date; freed slots are offered to
them in priority order by placing a hold in the patient's name.
"""
from __future__ import annotations

import datetime
import logging
from typing import Iterable, Optional

import bleach
from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from reservations import metrics
from reservations.exceptions import ConflictError, NotFoundError, PersistenceError
from reservations.models import User, WaitlistEntry, WaitlistOffer
from reservations.services import notifications, slot_table
from reservations.services.audit import log_action

logger = logging.getLogger(__name__)

ACTIVE = WaitlistEntry.STATUS_ACTIVE


def _pk(obj):
    return getattr(obj, 'pk', obj)


def _resolve_doctor(doctor) -> User:
    if isinstance(doctor, User):
        if doctor.role != 'doctor':
            raise NotFoundError(f'doctor {doctor.pk} not found')
        return doctor
    found = User.objects.filter(pk=doctor, role='doctor', is_active=True).first()
    if found is None:
        raise NotFoundError(f'doctor {doctor} not found')
    return found


def _iso_dates(dates: Optional[Iterable], exclude: datetime.date) -> list[str]:
    out = set()
    for d in dates or []:
        if isinstance(d, str):
            try:
                d = datetime.date.fromisoformat(d)
            except ValueError:
                raise ValidationError({'alternativeDates': f'invalid date: {d!r}'})
        if d != exclude:
            out.add(d.isoformat())
    return sorted(out)


class WaitlistCoordinator:
    def __init__(self, engine=None, clock=timezone.now):
        self._engine = engine
        self.clock = clock

    @property
    def engine(self):
        if self._engine is None:
            from reservations.services.engine import SlotReservationEngine
            self._engine = SlotReservationEngine(coordinator=self)
        return self._engine

    def offer_ttl(self) -> datetime.timedelta:
        minutes = settings.WAITLIST_OFFER_TTL_MINUTES or settings.SLOT_HOLD_TTL_MINUTES
        return datetime.timedelta(minutes=minutes)

    # ------------------------------------------------------------------
    # Entry lifecycle
    # ------------------------------------------------------------------
    def join(self, patient: User, doctor, preferred_date: datetime.date, alternative_dates=None,
             department: str = '', reason: str = '', priority: int = 0,
             expires_at: Optional[datetime.datetime] = None, *,
             now: Optional[datetime.datetime] = None) -> WaitlistEntry:
        now = now or self.clock()
        doctor = _resolve_doctor(doctor)
        if expires_at is None:
            expires_at = now + datetime.timedelta(days=settings.WAITLIST_DEFAULT_TTL_DAYS)
        elif expires_at <= now:
            raise ValidationError({'expiresAt': 'expiry must be in the future'})
        duplicate = 'already on the waitlist for this doctor and date'
        if WaitlistEntry.objects.filter(
            patient=patient, doctor=doctor, preferred_date=preferred_date, status=ACTIVE,
        ).exists():
            raise ConflictError(duplicate)
        alternatives = _iso_dates(alternative_dates, preferred_date)
        try:
            with transaction.atomic():
                entry = WaitlistEntry.objects.create(
                    patient=patient,
                    doctor=doctor,
                    preferred_date=preferred_date,
                    alternative_dates=alternatives,
                    department=department or doctor.department or '',
                    reason=bleach.clean((reason or '').strip(), strip=True),
                    priority=priority or 0,
                    expires_at=expires_at,
                )
        except IntegrityError as exc:
            # a concurrent join won the partial unique index
            raise ConflictError(duplicate) from exc
        except DatabaseError as exc:
            raise PersistenceError('could not join waitlist') from exc
        log_action(user=patient, action='waitlist_join', object_type='waitlist', object_id=entry.pk,
                   detail={'doctorId': doctor.pk, 'preferredDate': preferred_date.isoformat()})
        logger.info("waitlist join entry=%s patient=%s doctor=%s date=%s priority=%s",
                    entry.pk, patient.pk, doctor.pk, preferred_date, entry.priority)
        return entry

    def _finish(self, entry: WaitlistEntry, status: str, **values) -> WaitlistEntry:
        now = self.clock()
        try:
            changed = WaitlistEntry.objects.filter(pk=entry.pk, status=ACTIVE).update(
                status=status, updated_at=now, **values,
            )
        except DatabaseError as exc:
            raise PersistenceError('waitlist store unavailable') from exc
        if not changed:
            raise ConflictError(f'waitlist entry {entry.pk} is not active')
        entry.refresh_from_db()
        return entry

    def withdraw(self, entry: WaitlistEntry, actor=None) -> WaitlistEntry:
        entry = self._finish(entry, WaitlistEntry.STATUS_CANCELLED)
        log_action(user=actor, action='waitlist_withdraw', object_type='waitlist', object_id=entry.pk)
        logger.info("waitlist withdraw entry=%s by=%s", entry.pk, _pk(actor))
        return entry

    def fulfill(self, entry: WaitlistEntry, appointment_ref: Optional[str] = None, actor=None) -> WaitlistEntry:
        entry = self._finish(entry, WaitlistEntry.STATUS_FULFILLED, fulfilled_appointment_ref=appointment_ref)
        log_action(user=actor, action='waitlist_fulfill', object_type='waitlist', object_id=entry.pk,
                   detail={'appointmentRef': appointment_ref})
        logger.info("waitlist fulfil entry=%s ref=%s", entry.pk, appointment_ref)
        return entry

    def record_booking(self, patient, doctor, date: datetime.date, appointment_ref: str) -> Optional[WaitlistEntry]:
        """Mark the patient's matching Active entry fulfilled after they booked."""
        candidates = WaitlistEntry.objects.filter(
            patient_id=_pk(patient), doctor_id=_pk(doctor), status=ACTIVE,
        ).order_by('-priority', 'created_at', 'id')
        for entry in candidates:
            if date in entry.wanted_dates():
                try:
                    return self.fulfill(entry, appointment_ref, actor=patient)
                except ConflictError:
                    # withdrawn or expired between the read and the update
                    continue
        return None

    def expire_entries(self, now: Optional[datetime.datetime] = None) -> int:
        now = now or self.clock()
        try:
            count = WaitlistEntry.objects.filter(status=ACTIVE, expires_at__lte=now).update(
                status=WaitlistEntry.STATUS_EXPIRED, updated_at=now,
            )
        except DatabaseError as exc:
            raise PersistenceError('waitlist store unavailable') from exc
        if count:
            logger.info("waitlist expired %d entries", count)
        return count

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------
    def candidates(self, doctor, date: datetime.date, slot, now: datetime.datetime) -> list[WaitlistEntry]:
        try:
            entries = list(
                WaitlistEntry.objects.select_related('patient')
                .filter(doctor_id=_pk(doctor), status=ACTIVE, expires_at__gt=now,
                        notifications_sent__lt=settings.WAITLIST_MAX_OFFERS)
                .exclude(offers__slot=slot)
                .order_by('-priority', 'created_at', 'id')
            )
        except DatabaseError as exc:
            raise PersistenceError('waitlist store unavailable') from exc
        return [e for e in entries if date in e.wanted_dates()]

    def on_slot_freed(self, doctor, date: datetime.date, time, *,
                      now: Optional[datetime.datetime] = None) -> Optional[WaitlistEntry]:
        """Hold a freed slot for the best waiting patient and tell them.

        Returns the entry that received the offer, or ``None``.
        """
        now = now or self.clock()
        slot = slot_table.find(doctor, date, time)
        ttl = self.offer_ttl()
        for entry in self.candidates(doctor, date, slot, now):
            try:
                held = self.engine.hold(doctor, date, slot.time, entry.patient, ttl, now=now,
                                        reason=f'waitlist offer {entry.pk}')
            except ConflictError:
                continue
            except PersistenceError:
                logger.error("waitlist offer aborted doctor=%s date=%s time=%s", _pk(doctor), date, slot.time)
                return None
            try:
                with transaction.atomic():
                    WaitlistEntry.objects.filter(pk=entry.pk).update(
                        notifications_sent=F('notifications_sent') + 1, updated_at=now,
                    )
                    WaitlistOffer.objects.create(entry=entry, slot=held, hold_expires_at=held.hold_expires_at)
            except IntegrityError:
                logger.warning("duplicate offer entry=%s slot=%s", entry.pk, held.pk)
            except DatabaseError:
                # the hold stands; the offer bookkeeping is retried on the next free
                logger.exception("offer bookkeeping failed entry=%s slot=%s", entry.pk, held.pk)
            metrics.WAITLIST_OFFERS.inc()
            notifications.notify_waitlist_offer(entry, held)
            logger.info("waitlist offer entry=%s patient=%s slot=%s until=%s",
                        entry.pk, entry.patient_id, held.pk, held.hold_expires_at)
            entry.refresh_from_db()
            return entry
        return None

    def notify(self, entry: WaitlistEntry, date: datetime.date, time, actor=None) -> WaitlistEntry:
        """Staff-triggered notice that a slot is open; no hold is placed."""
        if entry.status != ACTIVE:
            raise ConflictError(f'waitlist entry {entry.pk} is not active')
        slot = slot_table.find(entry.doctor_id, date, time)
        try:
            WaitlistEntry.objects.filter(pk=entry.pk).update(
                notifications_sent=F('notifications_sent') + 1, updated_at=self.clock(),
            )
        except DatabaseError as exc:
            raise PersistenceError('waitlist store unavailable') from exc
        notifications.notify_slot_available(entry, date, slot.time, actor=actor)
        entry.refresh_from_db()
        return entry

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------
    def list_for_patient(self, patient) -> list[WaitlistEntry]:
        qs = (
            WaitlistEntry.objects.select_related('doctor')
            .filter(patient_id=_pk(patient), status__in=[ACTIVE, WaitlistEntry.STATUS_FULFILLED])
            .order_by('-created_at', '-id')
        )
        return self._fetch(qs)

    def list_for_doctor(self, doctor, status: Optional[str] = ACTIVE) -> list[WaitlistEntry]:
        qs = WaitlistEntry.objects.select_related('patient').filter(doctor_id=_pk(doctor))
        if status:
            qs = qs.filter(status=status)
        return self._fetch(qs.order_by('created_at', 'id'))

    @staticmethod
    def _fetch(qs) -> list[WaitlistEntry]:
        try:
            return list(qs)
        except DatabaseError as exc:
            raise PersistenceError('waitlist store unavailable') from exc
