import bleach
from rest_framework import serializers


class ScheduleCreateSerializer(serializers.Serializer):
    doctorId = serializers.IntegerField(min_value=1)
    date = serializers.DateField()
    times = serializers.ListField(child=serializers.CharField(max_length=8), allow_empty=True)
    location = serializers.CharField(max_length=255, required=False, allow_blank=True)
    department = serializers.CharField(max_length=120, required=False, allow_blank=True)
    notes = serializers.CharField(max_length=2000, required=False, allow_blank=True)

    def validate_notes(self, v):
        return bleach.clean((v or '').strip(), strip=True)


class AvailableQuerySerializer(serializers.Serializer):
    doctorId = serializers.IntegerField(min_value=1, required=False)
    specialization = serializers.CharField(max_length=120, required=False)
    department = serializers.CharField(max_length=120, required=False)
    date = serializers.DateField(required=False)
    startDate = serializers.DateField(required=False)
    endDate = serializers.DateField(required=False)

    def validate(self, attrs):
        start, end = attrs.get('startDate'), attrs.get('endDate')
        if start and end and start > end:
            raise serializers.ValidationError('startDate must not be after endDate')
        return attrs


class DateRangeQuerySerializer(serializers.Serializer):
    startDate = serializers.DateField(required=False)
    endDate = serializers.DateField(required=False)


class SlotRefSerializer(serializers.Serializer):
    doctorId = serializers.IntegerField(min_value=1)
    date = serializers.DateField()
    time = serializers.CharField(max_length=8)


class HoldSerializer(SlotRefSerializer):
    ttlMinutes = serializers.IntegerField(min_value=1, required=False)
    patientId = serializers.IntegerField(min_value=1, required=False)


class ReleaseSerializer(SlotRefSerializer):
    patientId = serializers.IntegerField(min_value=1, required=False)


class BookSerializer(SlotRefSerializer):
    appointmentRef = serializers.CharField(max_length=64)
    patientId = serializers.IntegerField(min_value=1, required=False)


class CancelSerializer(SlotRefSerializer):
    appointmentRef = serializers.CharField(max_length=64)


class BlockSerializer(serializers.Serializer):
    doctorId = serializers.IntegerField(min_value=1)
    date = serializers.DateField()
    times = serializers.ListField(child=serializers.CharField(max_length=8), allow_empty=False)


class ScheduleListQuerySerializer(serializers.Serializer):
    doctorId = serializers.IntegerField(min_value=1, required=False)
    date = serializers.DateField(required=False)
    department = serializers.CharField(max_length=120, required=False)
