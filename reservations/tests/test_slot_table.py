import datetime

import pytest
from django.db import OperationalError

from reservations.exceptions import (
    ConflictError,
    DuplicateScheduleError,
    InvalidSlotSetError,
    NotFoundError,
    PersistenceError,
)
from reservations.models import DoctorSchedule, ScheduleSlot
from reservations.services import slot_table

pytestmark = pytest.mark.django_db


def test_create_orders_and_pads_times(doctor, day):
    schedule = slot_table.create(doctor, day, ['10:00', '9:30', '09:00'])
    slots = list(schedule.slots.all())
    assert [s.time for s in slots] == ['09:00', '09:30', '10:00']
    assert [s.position for s in slots] == [0, 1, 2]
    assert all(s.status == ScheduleSlot.STATUS_AVAILABLE and s.invariant_holds() for s in slots)
    assert schedule.department == 'Heart Centre'


def test_create_rejects_second_table_for_same_day(doctor, schedule, day):
    with pytest.raises(DuplicateScheduleError):
        slot_table.create(doctor, day, ['11:00'])
    assert DoctorSchedule.objects.filter(doctor=doctor, date=day).count() == 1


@pytest.mark.parametrize('labels', [[], ['09:00', '9:00'], ['25:00'], ['noon']])
def test_create_rejects_bad_slot_sets(doctor, day, labels):
    with pytest.raises(InvalidSlotSetError):
        slot_table.create(doctor, day, labels)
    assert not DoctorSchedule.objects.filter(doctor=doctor, date=day).exists()


def test_find_and_get(doctor, schedule, day):
    assert slot_table.find(doctor, day, '9:30').time == '09:30'
    assert slot_table.get(doctor.pk, day).pk == schedule.pk
    with pytest.raises(NotFoundError):
        slot_table.find(doctor, day, '11:00')
    with pytest.raises(NotFoundError):
        slot_table.get(doctor, day + datetime.timedelta(days=400))


def test_delete_refuses_when_booked(doctor, schedule, day, engine, alice, now):
    engine.book(doctor, day, '09:00', alice, 'APT-1', now=now)
    with pytest.raises(ConflictError):
        slot_table.delete(doctor, day)
    assert DoctorSchedule.objects.filter(pk=schedule.pk).exists()

    engine.cancel(doctor, day, '09:00', 'APT-1', now=now)
    slot_table.delete(doctor, day)
    assert not DoctorSchedule.objects.filter(pk=schedule.pk).exists()
    assert not ScheduleSlot.objects.filter(schedule_id=schedule.pk).exists()


def test_lookups_report_store_outage(doctor, schedule, day, monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError('database is locked')

    monkeypatch.setattr(ScheduleSlot.objects, 'select_related', broken)
    monkeypatch.setattr(DoctorSchedule.objects, 'select_related', broken)
    with pytest.raises(PersistenceError):
        slot_table.find(doctor, day, '09:00')
    with pytest.raises(PersistenceError):
        slot_table.get(doctor, day)
    with pytest.raises(PersistenceError):
        slot_table.tables(doctor=doctor)


def test_tables_filters(doctor, schedule, day, make_patient):
    other = make_patient('dr_who')
    other.role, other.department = 'doctor', 'Skin Clinic'
    other.save()
    slot_table.create(other, day, ['08:00'])
    later = slot_table.create(doctor, day + datetime.timedelta(days=2), ['12:00'])

    assert [(t.doctor_id, t.date) for t in slot_table.tables()] == [
        (doctor.pk, day), (other.pk, day), (doctor.pk, later.date),
    ]
    assert [t.pk for t in slot_table.tables(doctor=doctor, date=day)] == [schedule.pk]
    assert [t.doctor_id for t in slot_table.tables(department='Skin Clinic')] == [other.pk]
