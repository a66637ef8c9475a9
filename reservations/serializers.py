from django.conf import settings
from rest_framework import serializers

from .models import Hotel, Payment, Reservation, ReservationIntent, Room


class RoomSerializer(serializers.ModelSerializer):

    class Meta:
        model = Room
        fields = ['id', 'hotel', 'number', 'type', 'price', 'status', 'capacity', 'description']


class ReservationSerializer(serializers.ModelSerializer):
    room = RoomSerializer(read_only=True)

    class Meta:
        model = Reservation
        fields = [
            'id', 'room', 'user', 'intent', 'guest_name', 'guest_email', 'guest_phone',
            'check_in', 'check_out', 'guests', 'status', 'payment_status', 'total_amount',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields


class ReservationIntentSerializer(serializers.ModelSerializer):
    reservation_id = serializers.SerializerMethodField()

    class Meta:
        model = ReservationIntent
        fields = [
            'id', 'hotel', 'room_type', 'check_in', 'check_out', 'nights', 'guests',
            'total_amount', 'currency', 'status', 'expires_at', 'reservation_id', 'created_at',
        ]
        read_only_fields = fields

    def get_reservation_id(self, instance):
        reservation = getattr(instance, 'reservation', None)
        return reservation.id if reservation else None


class CreateReservationIntentSerializer(serializers.Serializer):
    hotel_id = serializers.PrimaryKeyRelatedField(queryset=Hotel.objects.all(), source='hotel')
    room_type = serializers.CharField(max_length=50)
    check_in = serializers.DateField()
    check_out = serializers.DateField()
    guests = serializers.IntegerField(min_value=1)
    return_url = serializers.URLField(required=False)

    def validate(self, data):
        if data['check_out'] <= data['check_in']:
            raise serializers.ValidationError('check_out must be after check_in')
        return data


class PaymentSerializer(serializers.ModelSerializer):

    class Meta:
        model = Payment
        fields = [
            'id', 'reservation', 'intent', 'amount', 'currency', 'method', 'status',
            'transaction_reference', 'paid_at', 'created_at',
        ]
        read_only_fields = fields


class InitiatePaymentSerializer(serializers.Serializer):
    return_url = serializers.URLField(required=False)

    def get_return_url(self):
        return self.validated_data.get('return_url') or settings.CHAPA_RETURN_URL


class VerifyPaymentSerializer(serializers.Serializer):
    tx_ref = serializers.CharField(max_length=100)


class RefundPaymentSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500)


class CalendarQuerySerializer(serializers.Serializer):
    room_type = serializers.CharField()
    days = serializers.IntegerField(required=False, min_value=1, max_value=settings.CALENDAR_MAX_DAYS)

    def get_days(self):
        return self.validated_data.get('days') or settings.CALENDAR_DEFAULT_DAYS


class CheckInCalendarSerializer(CalendarQuerySerializer):
    start = serializers.DateField()


class CheckOutCalendarSerializer(CalendarQuerySerializer):
    check_in = serializers.DateField()


class AvailabilityRangeSerializer(serializers.Serializer):
    start = serializers.DateField()
    end = serializers.DateField()

    def validate(self, data):
        if data['start'] > data['end']:
            raise serializers.ValidationError('start must be before or equal to end')
        return data
