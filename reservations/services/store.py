"""
Single-slot conditional transitions.

Every change of a slot's state goes through :meth:`ReservationStore.transition`,
which issues ``UPDATE ... WHERE id = <slot> AND <expected state>`` and
inspects the affected row count.  The expected state is part of the
statement, so two callers racing for the same slot can never both match:
the database applies one update, the other sees zero rows and gets a
:class:`~reservations.exceptions.ConflictError`.  There is no read of the
slot's state between deciding and writing.

Expired holds are handled in the WHERE clause too: a Held slot whose
``hold_expires_at`` has passed matches an expectation of Available.
"""
from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from django.db import DatabaseError, transaction
from django.db.models import F, Q
from django.utils import timezone

from reservations.exceptions import ConflictError, NotFoundError, PersistenceError
from reservations.models import ScheduleSlot, SlotTransition
from reservations.services.slot_table import normalize_time

logger = logging.getLogger(__name__)

AVAILABLE = ScheduleSlot.STATUS_AVAILABLE
HELD = ScheduleSlot.STATUS_HELD
BOOKED = ScheduleSlot.STATUS_BOOKED
BLOCKED = ScheduleSlot.STATUS_BLOCKED

# restrict a Held expectation to live or lapsed holds
HOLD_ANY = 'any'
HOLD_LIVE = 'live'
HOLD_EXPIRED = 'expired'


def _pk(obj):
    return getattr(obj, 'pk', obj)


@dataclass(frozen=True)
class SlotState:
    """The complete set of mutable slot fields written by a transition."""
    status: str
    held_by_id: Optional[int] = None
    hold_expires_at: Optional[datetime.datetime] = None
    appointment_ref: Optional[str] = None

    @classmethod
    def available(cls) -> 'SlotState':
        return cls(AVAILABLE)

    @classmethod
    def held(cls, holder, until: datetime.datetime) -> 'SlotState':
        return cls(HELD, held_by_id=_pk(holder), hold_expires_at=until)

    @classmethod
    def booked(cls, appointment_ref: str) -> 'SlotState':
        return cls(BOOKED, appointment_ref=appointment_ref)

    @classmethod
    def blocked(cls) -> 'SlotState':
        return cls(BLOCKED)

    def as_update(self) -> dict:
        return {
            'status': self.status,
            'held_by_id': self.held_by_id,
            'hold_expires_at': self.hold_expires_at,
            'appointment_ref': self.appointment_ref,
        }


class ReservationStore:
    def __init__(self, clock=timezone.now):
        self.clock = clock

    def transition(self, doctor, date: datetime.date, time, expected_status: Union[str, Iterable[str]],
                   expected_holder=None, new_state: Optional[SlotState] = None, *,
                   expected_ref: Optional[str] = None, hold_state: str = HOLD_ANY,
                   actor=None, reason: str = '', now: Optional[datetime.datetime] = None) -> ScheduleSlot:
        """Move one slot to ``new_state`` if it is currently in an expected state.

        Returns the updated slot.  Raises ``ConflictError`` when the slot's
        persisted state did not match at the moment of the update,
        ``NotFoundError`` for an unknown slot and ``PersistenceError`` when
        the database fails.
        """
        if new_state is None:
            raise ValueError('new_state is required')
        now = now or self.clock()
        label = normalize_time(time)
        clauses = self._expectations(expected_status, expected_holder, expected_ref, hold_state, now)
        values = dict(new_state.as_update(), version=F('version') + 1, updated_at=now)
        try:
            with transaction.atomic():
                slot_id = (
                    ScheduleSlot.objects.filter(schedule__doctor_id=_pk(doctor), schedule__date=date, time=label)
                    .values_list('id', flat=True)
                    .first()
                )
                if slot_id is None:
                    raise NotFoundError(f'no slot {label} for doctor {_pk(doctor)} on {date:%Y-%m-%d}')
                from_status = None
                # the clauses are mutually exclusive; each attempt is its own compare-and-swap
                for status, clause in clauses:
                    if ScheduleSlot.objects.filter(clause, id=slot_id).update(**values):
                        from_status = status
                        break
                if from_status is None:
                    raise ConflictError(
                        f'slot {label} of doctor {_pk(doctor)} on {date:%Y-%m-%d} is not {self._describe(expected_status)}',
                        slot_id=slot_id,
                    )
                SlotTransition.objects.create(
                    slot_id=slot_id,
                    from_status=from_status,
                    to_status=new_state.status,
                    actor_id=_pk(actor) if actor is not None else None,
                    reason=(reason or '')[:255],
                )
                slot = ScheduleSlot.objects.select_related('schedule', 'held_by').get(id=slot_id)
        except (ConflictError, NotFoundError):
            raise
        except DatabaseError as exc:
            logger.error("slot transition failed doctor=%s date=%s time=%s: %s", _pk(doctor), date, label, exc)
            raise PersistenceError('slot store unavailable') from exc
        logger.debug("slot %s %s -> %s (%s)", slot_id, from_status, new_state.status, reason)
        return slot

    @staticmethod
    def _expectations(expected_status, expected_holder, expected_ref, hold_state, now) -> list[tuple[str, Q]]:
        statuses = [expected_status] if isinstance(expected_status, str) else list(expected_status)
        clauses: list[tuple[str, Q]] = []
        for status in statuses:
            if status == AVAILABLE:
                clauses.append((AVAILABLE, Q(status=AVAILABLE)))
                # a lapsed hold counts as Available even before the sweeper reclaims it
                clauses.append((HELD, Q(status=HELD, hold_expires_at__lte=now)))
            elif status == HELD:
                q = Q(status=HELD)
                if expected_holder is not None:
                    q &= Q(held_by_id=_pk(expected_holder))
                if hold_state == HOLD_LIVE:
                    q &= Q(hold_expires_at__gt=now)
                elif hold_state == HOLD_EXPIRED:
                    q &= Q(hold_expires_at__lte=now)
                clauses.append((HELD, q))
            elif status == BOOKED:
                q = Q(status=BOOKED)
                if expected_ref is not None:
                    q &= Q(appointment_ref=expected_ref)
                clauses.append((BOOKED, q))
            elif status == BLOCKED:
                clauses.append((BLOCKED, Q(status=BLOCKED)))
            else:
                raise ValueError(f'unknown slot status: {status!r}')
        return clauses

    @staticmethod
    def _describe(expected_status) -> str:
        if isinstance(expected_status, str):
            return expected_status
        return ' or '.join(expected_status)
