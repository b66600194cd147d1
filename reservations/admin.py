"""
Django admin registrations for schedules, slots and the waitlist.

Slot state is shown read-only: edits made here would bypass the
conditional transitions, so changes go through the API.
"""

from django.contrib import admin

from .models import (
    AuditEvent,
    DoctorSchedule,
    ScheduleSlot,
    SlotTransition,
    User,
    WaitlistEntry,
    WaitlistOffer,
)


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('username', 'role', 'specialization', 'department', 'is_staff', 'is_superuser')
    list_filter = ('role', 'department')
    search_fields = ('username', 'first_name', 'last_name', 'specialization')


class ScheduleSlotInline(admin.TabularInline):
    model = ScheduleSlot
    extra = 0
    fields = ('time', 'status', 'held_by', 'hold_expires_at', 'appointment_ref', 'version')
    readonly_fields = fields
    can_delete = False


@admin.register(DoctorSchedule)
class DoctorScheduleAdmin(admin.ModelAdmin):
    list_display = ('id', 'doctor', 'date', 'department', 'location', 'is_active')
    list_filter = ('is_active', 'department', 'date')
    search_fields = ('doctor__username', 'location')
    inlines = [ScheduleSlotInline]


@admin.register(ScheduleSlot)
class ScheduleSlotAdmin(admin.ModelAdmin):
    list_display = ('id', 'schedule', 'time', 'status', 'held_by', 'hold_expires_at', 'appointment_ref')
    list_filter = ('status',)
    search_fields = ('schedule__doctor__username', 'appointment_ref')
    readonly_fields = ('status', 'held_by', 'hold_expires_at', 'appointment_ref', 'version', 'updated_at')


@admin.register(SlotTransition)
class SlotTransitionAdmin(admin.ModelAdmin):
    list_display = ('slot', 'from_status', 'to_status', 'actor', 'timestamp')
    list_filter = ('to_status',)
    search_fields = ('slot__id', 'actor__username')


@admin.register(WaitlistEntry)
class WaitlistEntryAdmin(admin.ModelAdmin):
    list_display = ('id', 'patient', 'doctor', 'preferred_date', 'status', 'priority', 'notifications_sent', 'expires_at')
    list_filter = ('status',)
    search_fields = ('patient__username', 'doctor__username')


@admin.register(WaitlistOffer)
class WaitlistOfferAdmin(admin.ModelAdmin):
    list_display = ('entry', 'slot', 'hold_expires_at', 'created_at')


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ('action', 'user', 'object_type', 'object_id', 'created_at')
    list_filter = ('action',)
    search_fields = ('object_id', 'user__username')
