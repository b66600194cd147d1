import datetime

import pytest
from django.db import DatabaseError

from reservations.exceptions import ConflictError, NotFoundError, PersistenceError
from reservations.models import ScheduleSlot, SlotTransition
from reservations.services.store import (
    AVAILABLE,
    BOOKED,
    HELD,
    HOLD_EXPIRED,
    HOLD_LIVE,
    ReservationStore,
    SlotState,
)

pytestmark = pytest.mark.django_db


def _slot(schedule, time='09:00'):
    return ScheduleSlot.objects.get(schedule=schedule, time=time)


def test_transition_applies_and_records(doctor, day, schedule, alice, now):
    store = ReservationStore()
    until = now + datetime.timedelta(minutes=10)
    slot = store.transition(doctor, day, '09:00', AVAILABLE, new_state=SlotState.held(alice, until),
                            actor=alice, reason='hold', now=now)
    assert slot.status == HELD
    assert slot.held_by_id == alice.pk
    assert slot.hold_expires_at == until
    assert slot.version == 1
    assert slot.invariant_holds()
    t = SlotTransition.objects.get(slot=slot)
    assert (t.from_status, t.to_status, t.actor_id) == (AVAILABLE, HELD, alice.pk)


def test_stale_expectation_conflicts(doctor, day, schedule, alice, bob, now):
    store = ReservationStore()
    # both callers read Available; only the first write can match
    seen = _slot(schedule).status
    assert seen == AVAILABLE
    store.transition(doctor, day, '09:00', seen,
                     new_state=SlotState.held(alice, now + datetime.timedelta(minutes=5)), now=now)
    with pytest.raises(ConflictError) as exc:
        store.transition(doctor, day, '09:00', seen,
                         new_state=SlotState.held(bob, now + datetime.timedelta(minutes=5)), now=now)
    assert exc.value.context['slot_id'] == _slot(schedule).pk
    slot = _slot(schedule)
    assert slot.held_by_id == alice.pk
    assert slot.version == 1
    assert SlotTransition.objects.filter(slot=slot).count() == 1


def test_expired_hold_matches_available(doctor, day, schedule, alice, bob, now):
    store = ReservationStore()
    store.transition(doctor, day, '09:00', AVAILABLE,
                     new_state=SlotState.held(alice, now + datetime.timedelta(minutes=5)), now=now)
    later = now + datetime.timedelta(minutes=5)
    slot = store.transition(doctor, day, '09:00', AVAILABLE, new_state=SlotState.booked('APT-9'), now=later)
    assert slot.status == BOOKED
    assert slot.held_by_id is None and slot.hold_expires_at is None
    assert slot.invariant_holds()
    assert SlotTransition.objects.filter(slot=slot, to_status=BOOKED).get().from_status == HELD


def test_held_expectation_honours_holder_and_hold_state(doctor, day, schedule, alice, bob, now):
    store = ReservationStore()
    store.transition(doctor, day, '09:00', AVAILABLE,
                     new_state=SlotState.held(alice, now + datetime.timedelta(minutes=5)), now=now)
    with pytest.raises(ConflictError):
        store.transition(doctor, day, '09:00', HELD, expected_holder=bob,
                         new_state=SlotState.available(), now=now)
    with pytest.raises(ConflictError):
        store.transition(doctor, day, '09:00', HELD, expected_holder=alice, hold_state=HOLD_EXPIRED,
                         new_state=SlotState.available(), now=now)
    with pytest.raises(ConflictError):
        store.transition(doctor, day, '09:00', HELD, expected_holder=alice, hold_state=HOLD_LIVE,
                         new_state=SlotState.available(), now=now + datetime.timedelta(minutes=6))
    slot = store.transition(doctor, day, '09:00', HELD, expected_holder=alice, hold_state=HOLD_LIVE,
                            new_state=SlotState.available(), now=now)
    assert slot.status == AVAILABLE


def test_booked_expectation_checks_reference(doctor, day, schedule, now):
    store = ReservationStore()
    store.transition(doctor, day, '10:00', AVAILABLE, new_state=SlotState.booked('APT-1'), now=now)
    with pytest.raises(ConflictError):
        store.transition(doctor, day, '10:00', BOOKED, expected_ref='APT-2',
                         new_state=SlotState.available(), now=now)
    assert store.transition(doctor, day, '10:00', BOOKED, expected_ref='APT-1',
                            new_state=SlotState.available(), now=now).status == AVAILABLE


def test_unknown_slot(doctor, day, schedule, now):
    with pytest.raises(NotFoundError):
        ReservationStore().transition(doctor, day, '18:00', AVAILABLE, new_state=SlotState.blocked(), now=now)


def test_database_failure_is_persistence_error_and_rolls_back(doctor, day, schedule, now, monkeypatch):
    def broken(*args, **kwargs):
        raise DatabaseError('disk I/O error')

    monkeypatch.setattr(SlotTransition.objects, 'create', broken)
    with pytest.raises(PersistenceError):
        ReservationStore().transition(doctor, day, '09:00', AVAILABLE, new_state=SlotState.blocked(), now=now)
    slot = _slot(schedule)
    assert slot.status == AVAILABLE
    assert slot.version == 0
