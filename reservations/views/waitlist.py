"""
Waitlist endpoints.

Patients join and withdraw for themselves; staff can enrol a patient,
list a doctor's queue, send a manual slot notice and close entries.
"""
from __future__ import annotations

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from ..exceptions import NotFoundError
from ..models import User, WaitlistEntry
from ..permissions import IsStaffRole, is_staff_role
from ..serializers.waitlist import (
    WaitlistDoctorQuerySerializer,
    WaitlistFulfillSerializer,
    WaitlistJoinSerializer,
    WaitlistNotifySerializer,
)
from ..services.waitlist import WaitlistCoordinator

coordinator = WaitlistCoordinator()


def _format_entry(entry: WaitlistEntry) -> dict:
    return {
        'id': entry.id,
        'patientId': entry.patient_id,
        'doctorId': entry.doctor_id,
        'preferredDate': entry.preferred_date.isoformat(),
        'alternativeDates': list(entry.alternative_dates or []),
        'department': entry.department,
        'reason': entry.reason,
        'status': entry.status,
        'priority': entry.priority,
        'notificationsSent': entry.notifications_sent,
        'appointmentRef': entry.fulfilled_appointment_ref,
        'expiresAt': entry.expires_at.isoformat(),
        'createdAt': entry.created_at.isoformat(),
    }


def _get_entry(entry_id: int) -> WaitlistEntry:
    entry = WaitlistEntry.objects.select_related('patient').filter(pk=entry_id).first()
    if entry is None:
        raise NotFoundError(f'waitlist entry {entry_id} not found')
    return entry


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def join_waitlist(request):
    s = WaitlistJoinSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    v = s.validated_data
    staff = is_staff_role(request.user)
    patient = request.user
    if v.get('patientId') and v['patientId'] != request.user.pk:
        if not staff:
            raise PermissionDenied('cannot join the waitlist for another patient')
        patient = User.objects.filter(pk=v['patientId']).first()
        if patient is None:
            raise NotFoundError(f"patient {v['patientId']} not found")
    entry = coordinator.join(
        patient, v['doctorId'], v['preferredDate'],
        alternative_dates=v.get('alternativeDates'),
        department=v.get('department', ''),
        reason=v.get('reason', ''),
        # only staff may triage
        priority=v.get('priority', 0) if staff else 0,
        expires_at=v.get('expiresAt'),
    )
    return Response({'ok': True, 'data': _format_entry(entry)}, status=status.HTTP_201_CREATED)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def my_waitlist(request):
    data = [_format_entry(e) for e in coordinator.list_for_patient(request.user)]
    return Response({'ok': True, 'data': data})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def doctor_waitlist(request, doctor_id: int):
    q = WaitlistDoctorQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    entries = coordinator.list_for_doctor(doctor_id, status=q.validated_data.get('status', WaitlistEntry.STATUS_ACTIVE))
    return Response({'ok': True, 'data': [_format_entry(e) for e in entries]})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def notify_waitlist(request, entry_id: int):
    s = WaitlistNotifySerializer(data=request.data)
    s.is_valid(raise_exception=True)
    entry = coordinator.notify(_get_entry(entry_id), s.validated_data['date'], s.validated_data['time'], actor=request.user)
    return Response({'ok': True, 'data': _format_entry(entry)})


@api_view(['PUT'])
@permission_classes([IsAuthenticated, IsStaffRole])
def fulfill_waitlist(request, entry_id: int):
    s = WaitlistFulfillSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    entry = coordinator.fulfill(_get_entry(entry_id), s.validated_data.get('appointmentRef') or None, actor=request.user)
    return Response({'ok': True, 'data': _format_entry(entry)})


@api_view(['DELETE'])
@permission_classes([IsAuthenticated])
def withdraw_waitlist(request, entry_id: int):
    entry = _get_entry(entry_id)
    if entry.patient_id != request.user.pk and not is_staff_role(request.user):
        raise PermissionDenied('not your waitlist entry')
    entry = coordinator.withdraw(entry, actor=request.user)
    return Response({'ok': True, 'data': _format_entry(entry)})
