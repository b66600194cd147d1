"""
URL mappings for the scheduling API.

Trailing slashes are omitted, matching the paths the front-end calls.
"""
from django.urls import path, include

from .views import health
from .views.schedules import (
    available_slots,
    doctor_schedule,
    schedules,
    delete_schedule,
    hold_slot,
    release_slot,
    book_slot,
    cancel_slot,
    block_slots,
    unblock_slots,
)
from .views.waitlist import (
    join_waitlist,
    my_waitlist,
    doctor_waitlist,
    notify_waitlist,
    fulfill_waitlist,
    withdraw_waitlist,
)


urlpatterns = [
    # /metrics
    path('', include('django_prometheus.urls')),
    path('healthz', health.healthz),
    # Schedules
    path('api/schedules', schedules),
    path('api/schedules/available', available_slots),
    path('api/schedules/doctor/<int:doctor_id>', doctor_schedule),
    path('api/schedules/<int:doctor_id>/<str:date>', delete_schedule),
    # Slot operations
    path('api/schedules/hold', hold_slot),
    path('api/schedules/release', release_slot),
    path('api/schedules/book', book_slot),
    path('api/schedules/cancel', cancel_slot),
    path('api/schedules/block', block_slots),
    path('api/schedules/unblock', unblock_slots),
    # Waitlist
    path('api/waitlist', join_waitlist),
    path('api/waitlist/me', my_waitlist),
    path('api/waitlist/doctor/<int:doctor_id>', doctor_waitlist),
    path('api/waitlist/<int:entry_id>/notify', notify_waitlist),
    path('api/waitlist/<int:entry_id>/fulfill', fulfill_waitlist),
    path('api/waitlist/<int:entry_id>', withdraw_waitlist),
]
