"""
Eager reclamation of lapsed holds.

Lapsed holds already count as Available in every transition, so the
sweeper only tidies up and gives the waitlist a chance at the slot.
Each reclaim is the same conditional transition a user operation would
use, keyed on the holder seen in the scan: if the holder extended the
hold or booked in the meantime the reclaim is skipped.
"""
from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from django.db import DatabaseError

from reservations import metrics
from reservations.exceptions import ConflictError, PersistenceError
from reservations.models import ScheduleSlot
from reservations.services.store import HELD, HOLD_EXPIRED, ReservationStore, SlotState

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    scanned: int = 0
    released: int = 0
    skipped: int = 0
    failed: int = 0


class ExpirySweeper:
    def __init__(self, store: Optional[ReservationStore] = None, coordinator=None, batch_size: int = 500):
        self.store = store or ReservationStore()
        self._coordinator = coordinator
        self.batch_size = batch_size

    @property
    def coordinator(self):
        if self._coordinator is None:
            from reservations.services.waitlist import WaitlistCoordinator
            self._coordinator = WaitlistCoordinator()
        return self._coordinator

    def candidates(self, now: datetime.datetime) -> list[dict]:
        try:
            return list(
                ScheduleSlot.objects.filter(status=HELD, hold_expires_at__lt=now)
                .order_by('hold_expires_at', 'id')
                .values('schedule__doctor_id', 'schedule__date', 'time', 'held_by_id')[:self.batch_size]
            )
        except DatabaseError as exc:
            raise PersistenceError('could not scan held slots') from exc

    def sweep(self, now: Optional[datetime.datetime] = None) -> SweepResult:
        now = now or self.store.clock()
        result = SweepResult()
        rows = self.candidates(now)
        result.scanned = len(rows)
        for row in rows:
            doctor_id, date, time = row['schedule__doctor_id'], row['schedule__date'], row['time']
            try:
                self.store.transition(
                    doctor_id, date, time, HELD, expected_holder=row['held_by_id'],
                    new_state=SlotState.available(), hold_state=HOLD_EXPIRED,
                    reason='hold expired', now=now,
                )
            except ConflictError:
                # extended, booked or released since the scan
                result.skipped += 1
                continue
            except Exception:
                logger.exception("sweep failed doctor=%s date=%s time=%s", doctor_id, date, time)
                result.failed += 1
                continue
            result.released += 1
            metrics.SWEPT_HOLDS.inc()
            metrics.TRANSITIONS.labels(operation='expire').inc()
            try:
                self.coordinator.on_slot_freed(doctor_id, date, time, now=now)
            except Exception:
                logger.exception("waitlist back-fill failed doctor=%s date=%s time=%s", doctor_id, date, time)
        if result.scanned:
            logger.info("sweep scanned=%d released=%d skipped=%d failed=%d",
                        result.scanned, result.released, result.skipped, result.failed)
        return result
