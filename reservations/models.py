"""
Database models for the slot reservation service.

A doctor publishes one :class:`DoctorSchedule` per calendar day with a
fixed, ordered set of :class:`ScheduleSlot` rows.  Slots move between
Available, Held, Booked and Blocked exclusively through the conditional
updates issued by :mod:`reservations.services.store`; every successful
move is recorded as a :class:`SlotTransition`.  Patients that could not
get a slot queue up as :class:`WaitlistEntry` rows which the waitlist
coordinator offers freed slots to.
"""
from __future__ import annotations

import datetime

from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """Custom user model with a role.

    Doctors carry a specialization and department so availability can be
    filtered by them.  Who may hold, book or administer slots is decided
    by the permission classes, not by the reservation engine.
    """
    ROLE_CHOICES = [
        ('patient', 'Patient'),
        ('doctor', 'Doctor'),
        ('staff', 'Staff'),
        ('admin', 'Administrator'),
    ]
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default='patient', db_index=True)
    specialization = models.CharField(max_length=120, blank=True, db_index=True)
    department = models.CharField(max_length=120, blank=True)

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"


class DoctorSchedule(models.Model):
    """One doctor's bookable slots for one calendar day (a slot table)."""
    doctor = models.ForeignKey(User, on_delete=models.CASCADE, related_name='schedules')
    date = models.DateField()
    location = models.CharField(max_length=255, blank=True)
    department = models.CharField(max_length=120, blank=True)
    notes = models.TextField(blank=True)
    # inactive tables stay in the database but are hidden from availability queries
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['doctor', 'date'], name='uniq_schedule_doctor_date'),
        ]
        indexes = [
            models.Index(fields=['date', 'is_active'], name='reservation_date_4b1f0e_idx'),
        ]

    def __str__(self) -> str:
        return f"Schedule(d={self.doctor_id}, {self.date:%Y-%m-%d})"


class ScheduleSlot(models.Model):
    STATUS_AVAILABLE = 'Available'
    STATUS_HELD = 'Held'
    STATUS_BOOKED = 'Booked'
    STATUS_BLOCKED = 'Blocked'
    STATUS_CHOICES = [
        (STATUS_AVAILABLE, 'Available'),
        (STATUS_HELD, 'Held'),
        (STATUS_BOOKED, 'Booked'),
        (STATUS_BLOCKED, 'Blocked'),
    ]

    schedule = models.ForeignKey(DoctorSchedule, on_delete=models.CASCADE, related_name='slots')
    time = models.CharField(max_length=5)
    position = models.PositiveIntegerField()
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_AVAILABLE, db_index=True)
    held_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.PROTECT, related_name='held_slots'
    )
    # the sweeper scans on this column
    hold_expires_at = models.DateTimeField(null=True, blank=True, db_index=True)
    appointment_ref = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    version = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['position']
        constraints = [
            models.UniqueConstraint(fields=['schedule', 'time'], name='uniq_slot_schedule_time'),
        ]
        indexes = [
            models.Index(fields=['status', 'hold_expires_at'], name='reservation_status_9c2d41_idx'),
        ]

    def __str__(self) -> str:
        return f"Slot {self.time} [{self.status}] of {self.schedule_id}"

    def hold_expired(self, now: datetime.datetime) -> bool:
        return self.status == self.STATUS_HELD and self.hold_expires_at is not None and now >= self.hold_expires_at

    def effective_status(self, now: datetime.datetime) -> str:
        """Status as seen by callers: a lapsed hold reads as Available."""
        if self.hold_expired(now):
            return self.STATUS_AVAILABLE
        return self.status

    def invariant_holds(self) -> bool:
        """Hold fields are set only when Held, the appointment ref only when Booked."""
        held = self.held_by_id is not None and self.hold_expires_at is not None
        no_hold = self.held_by_id is None and self.hold_expires_at is None
        if self.status == self.STATUS_HELD:
            return held and not self.appointment_ref
        if self.status == self.STATUS_BOOKED:
            return no_hold and bool(self.appointment_ref)
        return no_hold and not self.appointment_ref


class SlotTransition(models.Model):
    """Records a status transition for a schedule slot."""
    slot = models.ForeignKey(ScheduleSlot, related_name='transitions', on_delete=models.CASCADE)
    from_status = models.CharField(max_length=10, null=True, blank=True)
    to_status = models.CharField(max_length=10)
    actor = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='slot_transitions')
    timestamp = models.DateTimeField(auto_now_add=True)
    reason = models.CharField(max_length=255, blank=True)

    def __str__(self) -> str:
        return f"{self.slot_id}: {self.from_status} → {self.to_status}"


class WaitlistEntry(models.Model):
    """A patient's standing request to be offered a freed slot.

    Entries are never deleted; they end up Fulfilled, Cancelled or
    Expired and are kept for audit.
    """
    STATUS_ACTIVE = 'Active'
    STATUS_FULFILLED = 'Fulfilled'
    STATUS_CANCELLED = 'Cancelled'
    STATUS_EXPIRED = 'Expired'
    STATUS_CHOICES = [
        (STATUS_ACTIVE, 'Active'),
        (STATUS_FULFILLED, 'Fulfilled'),
        (STATUS_CANCELLED, 'Cancelled'),
        (STATUS_EXPIRED, 'Expired'),
    ]

    patient = models.ForeignKey(User, on_delete=models.CASCADE, related_name='waitlist_entries')
    doctor = models.ForeignKey(User, on_delete=models.CASCADE, related_name='doctor_waitlist_entries')
    preferred_date = models.DateField()
    # ISO formatted dates ("YYYY-MM-DD")
    alternative_dates = models.JSONField(default=list, blank=True)
    department = models.CharField(max_length=120, blank=True)
    reason = models.TextField(blank=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    priority = models.IntegerField(default=0)
    notifications_sent = models.PositiveIntegerField(default=0)
    fulfilled_appointment_ref = models.CharField(max_length=64, null=True, blank=True)
    expires_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['patient', 'status'], name='reservation_patient_5e7a10_idx'),
            models.Index(fields=['doctor', 'preferred_date', 'status'], name='reservation_doctor__8f3b22_idx'),
            models.Index(fields=['status', 'created_at'], name='reservation_status_1a6c93_idx'),
            models.Index(fields=['expires_at'], name='reservation_expires_d04e57_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['patient', 'doctor', 'preferred_date'],
                condition=models.Q(status='Active'),
                name='uniq_active_waitlist_entry',
            ),
        ]

    def __str__(self) -> str:
        return f"Waitlist({self.patient_id} -> d={self.doctor_id} {self.preferred_date:%Y-%m-%d}) [{self.status}]"

    def wanted_dates(self) -> set[datetime.date]:
        dates = {self.preferred_date}
        for raw in self.alternative_dates or []:
            try:
                dates.add(datetime.date.fromisoformat(str(raw)))
            except ValueError:
                continue
        return dates


class WaitlistOffer(models.Model):
    """A hold granted to a waitlist entry for one specific slot."""
    entry = models.ForeignKey(WaitlistEntry, on_delete=models.CASCADE, related_name='offers')
    slot = models.ForeignKey(ScheduleSlot, on_delete=models.CASCADE, related_name='waitlist_offers')
    hold_expires_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['entry', 'slot'], name='uniq_offer_entry_slot'),
        ]

    def __str__(self) -> str:
        return f"Offer(entry={self.entry_id}, slot={self.slot_id})"


class AuditEvent(models.Model):
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=64)
    object_type = models.CharField(max_length=64, blank=True, null=True)
    object_id = models.CharField(max_length=64, blank=True, null=True)
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['action', 'created_at'], name='reservation_action_2b9e64_idx'),
            models.Index(fields=['object_type', 'object_id', 'created_at'], name='reservation_object__7c5d18_idx'),
        ]

    def __str__(self):
        return f"{self.action}:{self.user_id}@{self.created_at:%F %T}"
