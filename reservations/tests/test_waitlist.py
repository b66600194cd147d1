import datetime

import pytest
from django.db import OperationalError
from rest_framework.exceptions import ValidationError

from reservations.exceptions import ConflictError, NotFoundError, PersistenceError
from reservations.models import ScheduleSlot, WaitlistEntry, WaitlistOffer
from reservations.services import audit, notifications
from reservations.services.store import AVAILABLE, HELD

pytestmark = pytest.mark.django_db

MIN = datetime.timedelta(minutes=1)


def _slot(schedule, time='09:00'):
    return ScheduleSlot.objects.get(schedule=schedule, time=time)


def _free_slot(engine, doctor, day, booker, now, time='09:00'):
    """Book then cancel so the slot is handed to the waitlist."""
    engine.book(doctor, day, time, booker, f'APT-{booker.pk}-{time}', now=now)
    return engine.cancel(doctor, day, time, f'APT-{booker.pk}-{time}', now=now)


def test_join_defaults(coordinator, doctor, day, alice, now):
    entry = coordinator.join(alice, doctor.pk, day, alternative_dates=[day, day + datetime.timedelta(days=2)],
                             reason='<script>alert(1)</script>knee pain', now=now)
    assert entry.status == WaitlistEntry.STATUS_ACTIVE
    assert entry.expires_at == now + datetime.timedelta(days=30)
    assert entry.alternative_dates == [(day + datetime.timedelta(days=2)).isoformat()]
    assert entry.department == 'Heart Centre'
    assert '<script>' not in entry.reason


def test_join_rejections(coordinator, doctor, day, alice, bob, now):
    coordinator.join(alice, doctor, day, now=now)
    with pytest.raises(ConflictError):
        coordinator.join(alice, doctor, day, now=now)
    with pytest.raises(NotFoundError):
        coordinator.join(alice, bob, day, now=now)
    with pytest.raises(NotFoundError):
        coordinator.join(alice, 999999, day, now=now)
    with pytest.raises(ValidationError):
        coordinator.join(bob, doctor, day, expires_at=now - MIN, now=now)


def test_cancel_offers_slot_to_waitlist(engine, coordinator, doctor, day, schedule, alice, bob, make_patient, now):
    entry = coordinator.join(alice, doctor, day, now=now)
    carol = make_patient('carol')
    slot = _free_slot(engine, doctor, day, carol, now)
    assert slot.status == HELD
    assert slot.held_by_id == alice.pk
    assert slot.hold_expires_at == now + 10 * MIN
    entry.refresh_from_db()
    assert entry.notifications_sent == 1
    assert entry.status == WaitlistEntry.STATUS_ACTIVE
    assert WaitlistOffer.objects.filter(entry=entry, slot=slot).exists()
    # only the offered patient may book it while the hold lasts
    with pytest.raises(ConflictError):
        engine.book(doctor, day, '09:00', bob, 'APT-B', now=now + MIN)
    assert engine.book(doctor, day, '09:00', alice, 'APT-A', now=now + MIN).status == 'Booked'


def test_offers_follow_priority_then_arrival(engine, coordinator, sweeper, doctor, day, schedule, make_patient, now):
    a, b, c, booker = (make_patient(n) for n in ('pa', 'pb', 'pc', 'booker'))
    entry_a = coordinator.join(a, doctor, day, priority=5, now=now)
    entry_b = coordinator.join(b, doctor, day, priority=1, now=now)
    entry_c = coordinator.join(c, doctor, day, priority=5, now=now)

    _free_slot(engine, doctor, day, booker, now)
    assert _slot(schedule).held_by_id == a.pk

    # each lapsed offer moves on to the next candidate, never back
    sweeper.sweep(now=now + 11 * MIN)
    assert _slot(schedule).held_by_id == c.pk
    sweeper.sweep(now=now + 22 * MIN)
    assert _slot(schedule).held_by_id == b.pk
    sweeper.sweep(now=now + 33 * MIN)
    slot = _slot(schedule)
    assert slot.status == AVAILABLE and slot.invariant_holds()
    for entry in (entry_a, entry_b, entry_c):
        entry.refresh_from_db()
        assert entry.notifications_sent == 1
        assert entry.status == WaitlistEntry.STATUS_ACTIVE


def test_alternative_dates_match(engine, coordinator, doctor, day, schedule, alice, make_patient, now):
    coordinator.join(alice, doctor, day - datetime.timedelta(days=1), alternative_dates=[day], now=now)
    _free_slot(engine, doctor, day, make_patient('booker'), now)
    assert _slot(schedule).held_by_id == alice.pk


def test_ineligible_entries_are_skipped(engine, coordinator, doctor, day, schedule, alice, bob, make_patient, now):
    other_day = coordinator.join(make_patient('dora'), doctor, day + datetime.timedelta(days=3), priority=9, now=now)
    capped = coordinator.join(alice, doctor, day, priority=8, now=now)
    WaitlistEntry.objects.filter(pk=capped.pk).update(notifications_sent=3)
    expired = coordinator.join(make_patient('erin'), doctor, day, priority=7, now=now,
                               expires_at=now + MIN)
    fresh = coordinator.join(bob, doctor, day, now=now)
    _free_slot(engine, doctor, day, make_patient('booker'), now + 2 * MIN)
    assert _slot(schedule).held_by_id == bob.pk
    assert not WaitlistOffer.objects.filter(entry__in=[other_day, capped, expired]).exists()
    assert WaitlistOffer.objects.filter(entry=fresh).count() == 1


def test_taken_slot_is_not_offered(engine, coordinator, doctor, day, schedule, alice, bob, now):
    entry = coordinator.join(alice, doctor, day, now=now)
    engine.hold(doctor, day, '09:00', bob, now=now)
    assert coordinator.on_slot_freed(doctor, day, '09:00', now=now) is None
    entry.refresh_from_db()
    assert entry.notifications_sent == 0
    assert _slot(schedule).held_by_id == bob.pk


def test_delivery_failure_keeps_the_hold(engine, coordinator, doctor, day, schedule, alice, make_patient, now,
                                         monkeypatch):
    def broken(recipient, payload):
        raise ConnectionError('channel layer unreachable')

    monkeypatch.setattr(notifications, 'deliver', broken)
    entry = coordinator.join(alice, doctor, day, now=now)
    _free_slot(engine, doctor, day, make_patient('booker'), now)
    assert _slot(schedule).held_by_id == alice.pk
    entry.refresh_from_db()
    assert entry.notifications_sent == 1


def test_offer_is_delivered_to_patient_group(engine, coordinator, doctor, day, schedule, alice, make_patient, now,
                                             monkeypatch):
    sent = []
    monkeypatch.setattr(notifications, 'deliver', lambda recipient, payload: sent.append((recipient.pk, payload)))
    entry = coordinator.join(alice, doctor, day, now=now)
    _free_slot(engine, doctor, day, make_patient('booker'), now)
    [(recipient, payload)] = sent
    assert recipient == alice.pk
    assert payload['kind'] == 'waitlist.offer'
    assert payload['waitlistId'] == entry.pk
    assert payload['time'] == '09:00'
    assert payload['date'] == day.isoformat()


def test_withdraw_and_fulfill_only_active(coordinator, doctor, day, alice, bob, now):
    e1 = coordinator.join(alice, doctor, day, now=now)
    assert coordinator.withdraw(e1, actor=alice).status == WaitlistEntry.STATUS_CANCELLED
    with pytest.raises(ConflictError):
        coordinator.withdraw(e1, actor=alice)
    with pytest.raises(ConflictError):
        coordinator.fulfill(e1, 'APT-1')
    e2 = coordinator.join(bob, doctor, day, now=now)
    e2 = coordinator.fulfill(e2, 'APT-2')
    assert e2.status == WaitlistEntry.STATUS_FULFILLED
    assert e2.fulfilled_appointment_ref == 'APT-2'


def test_record_booking_fulfils_matching_entry(coordinator, doctor, day, alice, now):
    other = coordinator.join(alice, doctor, day + datetime.timedelta(days=5), now=now)
    entry = coordinator.join(alice, doctor, day, now=now)
    fulfilled = coordinator.record_booking(alice, doctor, day, 'APT-1')
    assert fulfilled.pk == entry.pk
    assert fulfilled.status == WaitlistEntry.STATUS_FULFILLED
    other.refresh_from_db()
    assert other.status == WaitlistEntry.STATUS_ACTIVE
    assert coordinator.record_booking(alice, doctor, day, 'APT-2') is None


def test_expire_entries(coordinator, doctor, day, alice, bob, now):
    soon = coordinator.join(alice, doctor, day, expires_at=now + MIN, now=now)
    later = coordinator.join(bob, doctor, day, now=now)
    assert coordinator.expire_entries(now=now + 2 * MIN) == 1
    assert coordinator.expire_entries(now=now + 2 * MIN) == 0
    soon.refresh_from_db()
    later.refresh_from_db()
    assert soon.status == WaitlistEntry.STATUS_EXPIRED
    assert later.status == WaitlistEntry.STATUS_ACTIVE


def test_manual_notify(coordinator, doctor, day, schedule, alice, staff, now, monkeypatch):
    sent = []
    monkeypatch.setattr(notifications, 'deliver', lambda recipient, payload: sent.append(payload))
    entry = coordinator.join(alice, doctor, day, now=now)
    entry = coordinator.notify(entry, day, '9:30', actor=staff)
    assert entry.notifications_sent == 1
    assert sent[0]['kind'] == 'waitlist.slot_available'
    assert sent[0]['time'] == '09:30'
    with pytest.raises(NotFoundError):
        coordinator.notify(entry, day, '12:00', actor=staff)


def test_listings(coordinator, doctor, day, alice, bob, now):
    first = coordinator.join(alice, doctor, day, now=now)
    second = coordinator.join(alice, doctor, day + datetime.timedelta(days=1), now=now)
    gone = coordinator.join(alice, doctor, day + datetime.timedelta(days=2), now=now)
    coordinator.withdraw(gone, actor=alice)
    coordinator.fulfill(second, 'APT-1')
    theirs = coordinator.join(bob, doctor, day, now=now)
    assert [e.pk for e in coordinator.list_for_patient(alice)] == [second.pk, first.pk]
    assert [e.pk for e in coordinator.list_for_doctor(doctor)] == [first.pk, theirs.pk]
    assert [e.pk for e in coordinator.list_for_doctor(doctor, status=WaitlistEntry.STATUS_CANCELLED)] == [gone.pk]


def test_entry_history_is_audited(engine, coordinator, doctor, day, schedule, alice, make_patient, now):
    entry = coordinator.join(alice, doctor, day, now=now)
    _free_slot(engine, doctor, day, make_patient('booker'), now)
    coordinator.withdraw(entry, actor=alice)
    assert [e.action for e in audit.history('waitlist', entry.pk)] == [
        'waitlist_join', 'waitlist_offer', 'waitlist_withdraw',
    ]


def test_concurrent_join_loses_to_unique_index(coordinator, doctor, day, alice, now, monkeypatch):
    coordinator.join(alice, doctor, day, now=now)
    # the second join's duplicate check ran before the first one committed
    monkeypatch.setattr(WaitlistEntry.objects, 'filter', lambda *args, **kwargs: WaitlistEntry.objects.none())
    with pytest.raises(ConflictError):
        coordinator.join(alice, doctor, day, now=now)
    monkeypatch.undo()
    assert WaitlistEntry.objects.filter(patient=alice, status=WaitlistEntry.STATUS_ACTIVE).count() == 1


def test_rejoin_after_withdraw_is_allowed(coordinator, doctor, day, alice, now):
    first = coordinator.join(alice, doctor, day, now=now)
    coordinator.withdraw(first, actor=alice)
    second = coordinator.join(alice, doctor, day, now=now)
    assert second.pk != first.pk
    assert second.status == WaitlistEntry.STATUS_ACTIVE


def test_waitlist_reads_report_store_outage(coordinator, doctor, day, schedule, alice, now, monkeypatch):
    slot = _slot(schedule)

    def broken(*args, **kwargs):
        raise OperationalError('database is locked')

    monkeypatch.setattr(WaitlistEntry.objects, 'select_related', broken)
    with pytest.raises(PersistenceError):
        coordinator.candidates(doctor, day, slot, now)
    with pytest.raises(PersistenceError):
        coordinator.list_for_patient(alice)
    with pytest.raises(PersistenceError):
        coordinator.list_for_doctor(doctor)
