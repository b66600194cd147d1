"""
Doctor schedule endpoints: publishing day tables, browsing availability
and the hold / book / release / cancel flow on individual slots.

Slot state changes are delegated to :class:`SlotReservationEngine`; a
slot that changed under the caller comes back as HTTP 409 through the
project exception handler, and the client is expected to re-query
availability.
"""
from __future__ import annotations

import datetime

from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import UserRateThrottle

from ..exceptions import ConflictError, InvalidSlotSetError, NotFoundError
from ..models import DoctorSchedule, ScheduleSlot, User
from ..permissions import IsAdminRole, IsStaffRole, is_staff_role
from ..serializers.schedule import (
    AvailableQuerySerializer,
    BlockSerializer,
    BookSerializer,
    CancelSerializer,
    DateRangeQuerySerializer,
    HoldSerializer,
    ReleaseSerializer,
    ScheduleCreateSerializer,
    ScheduleListQuerySerializer,
)
from ..services import slot_table
from ..services.audit import log_action
from ..services.engine import SlotReservationEngine

engine = SlotReservationEngine()


class SlotWriteThrottle(UserRateThrottle):
    scope = 'slot_write'


def _format_slot(slot: ScheduleSlot, now: datetime.datetime, *, detail: bool = False) -> dict:
    data = {
        'time': slot.time,
        'status': slot.effective_status(now),
    }
    if detail:
        held = slot.status == ScheduleSlot.STATUS_HELD and not slot.hold_expired(now)
        data.update({
            'heldBy': slot.held_by_id if held else None,
            'holdExpiresAt': slot.hold_expires_at.isoformat() if held else None,
            'appointmentRef': slot.appointment_ref,
        })
    return data


def _format_schedule(schedule: DoctorSchedule, slots, now: datetime.datetime, *, detail: bool = False) -> dict:
    doctor = schedule.doctor
    return {
        'id': schedule.id,
        'doctorId': doctor.id,
        'doctorName': doctor.get_full_name() or doctor.username,
        'specialization': doctor.specialization,
        'department': schedule.department,
        'date': schedule.date.isoformat(),
        'location': schedule.location,
        'isActive': schedule.is_active,
        'slots': [_format_slot(s, now, detail=detail) for s in slots],
    }


def _get_doctor(doctor_id: int) -> User:
    doctor = User.objects.filter(pk=doctor_id, role='doctor').first()
    if doctor is None:
        raise NotFoundError(f'doctor {doctor_id} not found')
    return doctor


def _acting_patient(request, patient_id) -> User:
    """The caller, or the patient staff are acting for."""
    if not patient_id or patient_id == request.user.pk:
        return request.user
    if not is_staff_role(request.user):
        raise PermissionDenied('cannot act for another patient')
    patient = User.objects.filter(pk=patient_id).first()
    if patient is None:
        raise NotFoundError(f'patient {patient_id} not found')
    return patient


def _parse_date(value: str) -> datetime.date:
    try:
        return datetime.date.fromisoformat(value)
    except ValueError:
        raise ValidationError({'date': f'invalid date: {value!r}'})


@api_view(['GET'])
@permission_classes([AllowAny])
def available_slots(request):
    q = AvailableQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    v = q.validated_data
    now = timezone.now()
    tables = engine.available_slots(
        doctor=v.get('doctorId'),
        specialization=v.get('specialization'),
        department=v.get('department'),
        date=v.get('date'),
        date_from=v.get('startDate'),
        date_to=v.get('endDate'),
        now=now,
    )
    data = [_format_schedule(t.schedule, t.slots, now) for t in tables if t.slots]
    return Response({'ok': True, 'data': data})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def doctor_schedule(request, doctor_id: int):
    q = DateRangeQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    now = timezone.now()
    detail = is_staff_role(request.user) or request.user.pk == doctor_id
    schedules = engine.doctor_schedule(
        doctor_id, date_from=q.validated_data.get('startDate'), date_to=q.validated_data.get('endDate'),
    )
    data = [_format_schedule(s, s.slots.all(), now, detail=detail) for s in schedules]
    return Response({'ok': True, 'data': data})


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def schedules(request):
    """GET lists every table, any state, for the front desk; POST publishes one."""
    if request.method == 'POST':
        return _create_schedule(request)
    q = ScheduleListQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    v = q.validated_data
    now = timezone.now()
    tables = slot_table.tables(doctor=v.get('doctorId'), date=v.get('date'), department=v.get('department'))
    data = [_format_schedule(t, t.slots.all(), now, detail=True) for t in tables]
    return Response({'ok': True, 'data': data})


def _create_schedule(request):
    s = ScheduleCreateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    v = s.validated_data
    doctor = _get_doctor(v['doctorId'])
    schedule = slot_table.create(
        doctor, v['date'], v['times'],
        location=v.get('location', ''),
        department=v.get('department') or None,
        notes=v.get('notes', ''),
    )
    log_action(user=request.user, action='schedule_create', object_type='schedule', object_id=schedule.id,
               detail={'doctorId': doctor.id, 'date': v['date'].isoformat()})
    schedule = slot_table.get(doctor, schedule.date)
    data = _format_schedule(schedule, schedule.slots.all(), timezone.now(), detail=True)
    return Response({'ok': True, 'data': data}, status=status.HTTP_201_CREATED)


@api_view(['DELETE'])
@permission_classes([IsAuthenticated, IsAdminRole])
def delete_schedule(request, doctor_id: int, date: str):
    day = _parse_date(date)
    slot_table.delete(doctor_id, day)
    log_action(user=request.user, action='schedule_delete', object_type='schedule',
               object_id=f'{doctor_id}:{day.isoformat()}')
    return Response({'ok': True})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@throttle_classes([SlotWriteThrottle])
def hold_slot(request):
    s = HoldSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    v = s.validated_data
    who = _acting_patient(request, v.get('patientId'))
    now = timezone.now()
    slot = engine.hold(v['doctorId'], v['date'], v['time'], who, v.get('ttlMinutes'), now=now)
    return Response({'ok': True, 'data': _format_slot(slot, now, detail=True)})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def release_slot(request):
    s = ReleaseSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    v = s.validated_data
    who = _acting_patient(request, v.get('patientId'))
    now = timezone.now()
    slot = engine.release(v['doctorId'], v['date'], v['time'], who, now=now)
    return Response({'ok': True, 'data': _format_slot(slot, now, detail=True)})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@throttle_classes([SlotWriteThrottle])
def book_slot(request):
    """Book a slot; a matching waitlist entry of the patient is marked fulfilled."""
    s = BookSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    v = s.validated_data
    who = _acting_patient(request, v.get('patientId'))
    now = timezone.now()
    slot = engine.book(v['doctorId'], v['date'], v['time'], who, v['appointmentRef'], now=now)
    entry = engine.coordinator.record_booking(who, v['doctorId'], v['date'], v['appointmentRef'])
    data = _format_slot(slot, now, detail=True)
    data['waitlistEntryId'] = entry.id if entry else None
    return Response({'ok': True, 'data': data})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def cancel_slot(request):
    s = CancelSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    v = s.validated_data
    now = timezone.now()
    slot = engine.cancel(v['doctorId'], v['date'], v['time'], v['appointmentRef'], actor=request.user, now=now)
    return Response({'ok': True, 'data': _format_slot(slot, now, detail=True)})


def _bulk(request, operation):
    s = BlockSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    v = s.validated_data
    done, failed = [], []
    for time in v['times']:
        try:
            slot = operation(v['doctorId'], v['date'], time, actor=request.user)
        except (ConflictError, NotFoundError, InvalidSlotSetError) as e:
            failed.append({'time': time, 'code': e.code, 'message': e.message})
            continue
        done.append(slot.time)
    return Response({'ok': True, 'data': {'updated': done, 'failed': failed}})


@api_view(['PUT'])
@permission_classes([IsAuthenticated, IsStaffRole])
def block_slots(request):
    return _bulk(request, engine.block)


@api_view(['PUT'])
@permission_classes([IsAuthenticated, IsStaffRole])
def unblock_slots(request):
    return _bulk(request, engine.unblock)
