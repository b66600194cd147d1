import datetime

import pytest
from django.utils import timezone

from reservations.models import User
from reservations.services import slot_table
from reservations.services.engine import SlotReservationEngine
from reservations.services.sweeper import ExpirySweeper
from reservations.services.waitlist import WaitlistCoordinator


@pytest.fixture
def now():
    return timezone.now().replace(microsecond=0)


@pytest.fixture
def day(now):
    return timezone.localdate(now) + datetime.timedelta(days=1)


@pytest.fixture
def doctor(db):
    return User.objects.create_user(
        username='dr_house', password='P@ssw0rd1', role='doctor',
        specialization='Cardiology', department='Heart Centre',
    )


@pytest.fixture
def staff(db):
    return User.objects.create_user(username='frontdesk', password='P@ssw0rd1', role='staff')


@pytest.fixture
def make_patient(db):
    def _make(username):
        return User.objects.create_user(username=username, password='P@ssw0rd1', role='patient')
    return _make


@pytest.fixture
def alice(make_patient):
    return make_patient('alice')


@pytest.fixture
def bob(make_patient):
    return make_patient('bob')


@pytest.fixture
def schedule(doctor, day):
    return slot_table.create(doctor, day, ['09:00', '09:30', '10:00'], location='Room 4')


@pytest.fixture
def coordinator():
    return WaitlistCoordinator()


@pytest.fixture
def engine(coordinator):
    return coordinator.engine


@pytest.fixture
def sweeper(coordinator):
    return ExpirySweeper(coordinator=coordinator)
