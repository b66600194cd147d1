"""
Races between real database connections.

Each worker thread gets its own connection, so these tests need a
transactional database: the rows the threads race on must be committed.
"""
import datetime
import threading

import pytest
from django.db import connection

from reservations.exceptions import ConflictError, ReservationError
from reservations.models import ScheduleSlot, SlotTransition
from reservations.services.store import BOOKED, HELD

pytestmark = pytest.mark.django_db(transaction=True)

MIN = datetime.timedelta(minutes=1)
WORKERS = 8


def race(*calls):
    """Start every call at the same moment; return what each returned or raised."""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def run(i, call):
        try:
            barrier.wait()
            outcomes[i] = call()
        except ReservationError as exc:
            outcomes[i] = exc
        finally:
            connection.close()

    threads = [threading.Thread(target=run, args=(i, call)) for i, call in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


def test_one_of_many_concurrent_holds_wins(engine, doctor, day, schedule, make_patient, now):
    patients = [make_patient(f'racer{i}') for i in range(WORKERS)]
    outcomes = race(*[
        (lambda p=p: engine.hold(doctor, day, '09:00', p, now=now)) for p in patients
    ])

    winners = [o for o in outcomes if isinstance(o, ScheduleSlot)]
    losers = [o for o in outcomes if not isinstance(o, ScheduleSlot)]
    assert len(winners) == 1
    assert len(losers) == WORKERS - 1
    assert all(isinstance(o, ConflictError) for o in losers)

    slot = ScheduleSlot.objects.get(schedule=schedule, time='09:00')
    assert slot.status == HELD
    assert slot.held_by_id == winners[0].held_by_id
    assert SlotTransition.objects.filter(slot=slot).count() == 1


def test_concurrent_bookings_never_double_book(engine, doctor, day, schedule, make_patient, now):
    patients = [make_patient(f'booker{i}') for i in range(WORKERS)]
    outcomes = race(*[
        (lambda i=i, p=p: engine.book(doctor, day, '09:30', p, f'APT-{i}', now=now))
        for i, p in enumerate(patients)
    ])

    winners = [o for o in outcomes if isinstance(o, ScheduleSlot)]
    assert len(winners) == 1
    assert all(isinstance(o, ConflictError) for o in outcomes if o is not winners[0])
    slot = ScheduleSlot.objects.get(schedule=schedule, time='09:30')
    assert slot.status == BOOKED
    assert slot.appointment_ref == winners[0].appointment_ref


def test_booking_racing_the_sweeper_is_kept(engine, sweeper, doctor, day, schedule, alice, bob, now):
    engine.hold(doctor, day, '10:00', alice, 5, now=now)
    later = now + 6 * MIN

    booked, swept = race(
        lambda: engine.book(doctor, day, '10:00', bob, 'APT-B', now=later),
        lambda: sweeper.sweep(now=later),
    )

    # either order is fine, but the booking must survive
    assert isinstance(booked, ScheduleSlot)
    assert swept.scanned in (0, 1)
    assert swept.released + swept.skipped == swept.scanned
    assert swept.failed == 0
    slot = ScheduleSlot.objects.get(schedule=schedule, time='10:00')
    assert slot.status == BOOKED
    assert slot.appointment_ref == 'APT-B'
    assert slot.invariant_holds()
