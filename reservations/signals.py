"""
Signals consumed by the appointment-record service.

``slot_booked`` is sent once a booking has been committed, with
``doctor_id``, ``date``, ``time``, ``appointment_ref`` and ``patient_id``.
``slot_cancelled`` is sent after a cancellation freed the slot, with
``doctor_id``, ``date``, ``time`` and ``appointment_ref``.
"""
from django.dispatch import Signal

slot_booked = Signal()
slot_cancelled = Signal()
