from rest_framework import serializers

from reservations.models import WaitlistEntry


class WaitlistJoinSerializer(serializers.Serializer):
    doctorId = serializers.IntegerField(min_value=1)
    preferredDate = serializers.DateField()
    alternativeDates = serializers.ListField(child=serializers.DateField(), required=False)
    department = serializers.CharField(max_length=120, required=False, allow_blank=True)
    reason = serializers.CharField(max_length=2000, required=False, allow_blank=True)
    priority = serializers.IntegerField(min_value=0, max_value=10, required=False)
    expiresAt = serializers.DateTimeField(required=False)
    patientId = serializers.IntegerField(min_value=1, required=False)


class WaitlistDoctorQuerySerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=[c for c, _ in WaitlistEntry.STATUS_CHOICES], required=False)


class WaitlistNotifySerializer(serializers.Serializer):
    date = serializers.DateField()
    time = serializers.CharField(max_length=8)


class WaitlistFulfillSerializer(serializers.Serializer):
    appointmentRef = serializers.CharField(max_length=64, required=False, allow_blank=True)
