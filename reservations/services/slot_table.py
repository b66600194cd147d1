"""
Slot tables: one doctor's ordered, fixed set of slots for one day.

Tables are created at publish time and looked up by (doctor, date).
Nothing here changes a slot's state; that is the reservation store's job.
"""
from __future__ import annotations

import datetime
import logging
from typing import Iterable, Optional

from django.db import DatabaseError, IntegrityError, transaction

from reservations.exceptions import (
    ConflictError,
    DuplicateScheduleError,
    InvalidSlotSetError,
    NotFoundError,
    PersistenceError,
)
from reservations.models import DoctorSchedule, ScheduleSlot, User

logger = logging.getLogger(__name__)


def _pk(obj) -> int:
    return getattr(obj, 'pk', obj)


def normalize_time(label) -> str:
    """Return ``label`` as a zero padded ``HH:MM`` string."""
    try:
        parsed = datetime.datetime.strptime(str(label).strip(), '%H:%M')
    except ValueError:
        raise InvalidSlotSetError(f'invalid slot time: {label!r}')
    return parsed.strftime('%H:%M')


def normalize_labels(time_labels: Iterable) -> list[str]:
    labels = [normalize_time(t) for t in time_labels or []]
    if not labels:
        raise InvalidSlotSetError('a schedule needs at least one slot')
    dupes = sorted({t for t in labels if labels.count(t) > 1})
    if dupes:
        raise InvalidSlotSetError(f'duplicate slot times: {", ".join(dupes)}')
    return sorted(labels)


def create(doctor: User, date: datetime.date, time_labels: Iterable, *, location: str = '',
           department: Optional[str] = None, notes: str = '') -> DoctorSchedule:
    labels = normalize_labels(time_labels)
    if DoctorSchedule.objects.filter(doctor=doctor, date=date).exists():
        raise DuplicateScheduleError(f'schedule for doctor {doctor.pk} on {date:%Y-%m-%d} already exists')
    try:
        with transaction.atomic():
            schedule = DoctorSchedule.objects.create(
                doctor=doctor,
                date=date,
                location=location or '',
                department=department if department is not None else (doctor.department or ''),
                notes=notes or '',
            )
            ScheduleSlot.objects.bulk_create([
                ScheduleSlot(schedule=schedule, time=label, position=i)
                for i, label in enumerate(labels)
            ])
    except IntegrityError as exc:
        # lost a race against a concurrent publish of the same day
        raise DuplicateScheduleError(f'schedule for doctor {doctor.pk} on {date:%Y-%m-%d} already exists') from exc
    except DatabaseError as exc:
        raise PersistenceError('could not create schedule') from exc
    logger.info("schedule published doctor=%s date=%s slots=%d", doctor.pk, date, len(labels))
    return schedule


def get(doctor, date: datetime.date) -> DoctorSchedule:
    try:
        schedule = (
            DoctorSchedule.objects.select_related('doctor')
            .prefetch_related('slots')
            .filter(doctor_id=_pk(doctor), date=date)
            .first()
        )
    except DatabaseError as exc:
        raise PersistenceError('schedule store unavailable') from exc
    if schedule is None:
        raise NotFoundError(f'no schedule for doctor {_pk(doctor)} on {date:%Y-%m-%d}')
    return schedule


def find(doctor, date: datetime.date, time) -> ScheduleSlot:
    label = normalize_time(time)
    try:
        slot = (
            ScheduleSlot.objects.select_related('schedule', 'held_by')
            .filter(schedule__doctor_id=_pk(doctor), schedule__date=date, time=label)
            .first()
        )
    except DatabaseError as exc:
        raise PersistenceError('schedule store unavailable') from exc
    if slot is None:
        raise NotFoundError(f'no slot {label} for doctor {_pk(doctor)} on {date:%Y-%m-%d}')
    return slot


def tables(*, doctor=None, date: Optional[datetime.date] = None,
           department: Optional[str] = None) -> list[DoctorSchedule]:
    """Every table matching the filters, active or not, ordered by date."""
    qs = DoctorSchedule.objects.select_related('doctor')
    if doctor is not None:
        qs = qs.filter(doctor_id=_pk(doctor))
    if date:
        qs = qs.filter(date=date)
    if department:
        qs = qs.filter(department=department)
    try:
        return list(qs.prefetch_related('slots', 'slots__held_by').order_by('date', 'doctor_id'))
    except DatabaseError as exc:
        raise PersistenceError('schedule store unavailable') from exc


def delete(doctor, date: datetime.date) -> None:
    """Remove a day's table.  Tables with booked slots are kept."""
    schedule = get(doctor, date)
    try:
        with transaction.atomic():
            deleted, _ = (
                DoctorSchedule.objects.filter(pk=schedule.pk)
                .exclude(slots__status=ScheduleSlot.STATUS_BOOKED)
                .delete()
            )
    except DatabaseError as exc:
        raise PersistenceError('could not delete schedule') from exc
    if not deleted:
        raise ConflictError('cannot delete a schedule with booked appointments')
    logger.info("schedule deleted doctor=%s date=%s", schedule.doctor_id, date)
