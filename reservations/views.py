import json
import logging
from datetime import datetime

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.http import JsonResponse
from django.urls import reverse
from rest_framework import mixins, permissions, status, viewsets
from rest_framework.decorators import action, api_view, permission_classes
from rest_framework.response import Response
from rest_framework.views import APIView

from . import availability, intents, payments
from .audit import log_event
from .exceptions import GatewayUnavailableError
from .models import Payment, Reservation, ReservationIntent, Room, UserProfile
from .serializers import (
    AvailabilityRangeSerializer,
    CheckInCalendarSerializer,
    CheckOutCalendarSerializer,
    CreateReservationIntentSerializer,
    InitiatePaymentSerializer,
    PaymentSerializer,
    RefundPaymentSerializer,
    ReservationIntentSerializer,
    ReservationSerializer,
    RoomSerializer,
    VerifyPaymentSerializer,
)

logger = logging.getLogger(__name__)


def welcome(request):
    return JsonResponse({'message': 'Welcome to the Hotel Booking System'})


def health_check(request):
    return JsonResponse({'status': 'ok'})


def _profile(user):
    return getattr(user, 'profile', None)


def _is_staff(user):
    profile = _profile(user)
    return user.is_superuser or bool(profile and profile.is_staff_role)


class IsHotelStaff(permissions.BasePermission):
    message = 'Staff role required'

    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated and _is_staff(request.user))


def _callback_url(request):
    return settings.CHAPA_CALLBACK_URL or request.build_absolute_uri(reverse('chapa-webhook'))


class RoomViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Room.objects.all().order_by('id')
    serializer_class = RoomSerializer
    permission_classes = [permissions.AllowAny]

    def list(self, request, *args, **kwargs):
        """Search free rooms of a hotel/type for a date range"""
        hotel_id = request.query_params.get('hotel')
        room_type = request.query_params.get('room_type')
        check_in_str = request.query_params.get('check_in')
        check_out_str = request.query_params.get('check_out')

        if not (hotel_id and room_type and check_in_str and check_out_str):
            rooms = self.get_queryset()
            if hotel_id:
                rooms = rooms.filter(hotel_id=hotel_id)
            serializer = self.get_serializer(rooms, many=True)
            return Response(serializer.data)

        try:
            check_in = datetime.strptime(check_in_str, '%Y-%m-%d').date()
            check_out = datetime.strptime(check_out_str, '%Y-%m-%d').date()
            hotel_id = int(hotel_id)
        except ValueError:
            return Response({'error': 'Invalid parameters. Dates use YYYY-MM-DD'},
                            status=status.HTTP_400_BAD_REQUEST)
        if check_out <= check_in:
            return Response({'error': 'check_out must be after check_in'}, status=status.HTTP_400_BAD_REQUEST)

        rooms = availability.available_rooms_qs(hotel_id, room_type, check_in, check_out)
        serializer = self.get_serializer(rooms, many=True)
        return Response(serializer.data)


@api_view(['GET'])
@permission_classes([permissions.AllowAny])
def hotel_availability(request, hotel_id):
    """Per-type, per-day availability for a hotel"""
    query = AvailabilityRangeSerializer(data=request.query_params)
    query.is_valid(raise_exception=True)
    data = availability.availability_by_type(hotel_id, query.validated_data['start'], query.validated_data['end'])
    return Response({'data': data})


@api_view(['GET'])
@permission_classes([permissions.AllowAny])
def disabled_check_in_dates(request, hotel_id):
    query = CheckInCalendarSerializer(data=request.query_params)
    query.is_valid(raise_exception=True)
    dates = availability.disabled_check_in_dates(
        hotel_id, query.validated_data['room_type'], query.validated_data['start'], query.get_days(),
    )
    return Response({'data': [d.isoformat() for d in dates]})


@api_view(['GET'])
@permission_classes([permissions.AllowAny])
def disabled_check_out_dates(request, hotel_id):
    query = CheckOutCalendarSerializer(data=request.query_params)
    query.is_valid(raise_exception=True)
    dates = availability.disabled_check_out_dates(
        hotel_id, query.validated_data['room_type'], query.validated_data['check_in'], query.get_days(),
    )
    return Response({'data': [d.isoformat() for d in dates]})


class ReservationIntentViewSet(mixins.CreateModelMixin, mixins.RetrieveModelMixin,
                               mixins.ListModelMixin, viewsets.GenericViewSet):
    serializer_class = ReservationIntentSerializer

    def get_queryset(self):
        return ReservationIntent.objects.filter(user=self.request.user).select_related('reservation').order_by('-created_at')

    def create(self, request, *args, **kwargs):
        """Create a reservation intent and start its payment"""
        serializer = CreateReservationIntentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        intent = intents.create_intent(
            user=request.user,
            hotel_id=data['hotel'].id,
            room_type=data['room_type'],
            check_in=data['check_in'],
            check_out=data['check_out'],
            guests=data['guests'],
        )
        try:
            payment, result = intents.initiate_intent_payment(
                intent,
                callback_url=_callback_url(request),
                return_url=data.get('return_url') or settings.CHAPA_RETURN_URL,
            )
        except GatewayUnavailableError as e:
            return Response({'detail': str(e.detail), 'intent_id': intent.id},
                            status=status.HTTP_502_BAD_GATEWAY)

        return Response({
            'message': 'Reservation intent created and payment initiated',
            'data': {
                'intent_id': intent.id,
                'checkout_url': result.checkout_url,
                'tx_ref': payment.transaction_reference,
            },
        }, status=status.HTTP_201_CREATED)


class ReservationViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = ReservationSerializer

    def get_queryset(self):
        user = self.request.user
        qs = Reservation.objects.select_related('room').order_by('-created_at')
        if user.is_superuser:
            return qs
        profile = _profile(user)
        if profile and profile.role == UserProfile.Role.SUPERADMIN:
            return qs
        if profile and profile.is_staff_role:
            return qs.filter(room__hotel_id=profile.hotel_id)
        return qs.filter(user=user)

    @action(detail=True, methods=['post'])
    def initiate_payment(self, request, pk=None):
        """Start a Chapa payment for an existing reservation"""
        reservation = self.get_object()
        serializer = InitiatePaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        payment, result = intents.initiate_reservation_payment(
            reservation,
            callback_url=_callback_url(request),
            return_url=serializer.get_return_url(),
        )
        return Response({
            'message': 'Payment initiated successfully',
            'data': {'checkout_url': result.checkout_url, 'tx_ref': payment.transaction_reference},
        }, status=status.HTTP_201_CREATED)

    def _transition(self, request, new_status):
        with transaction.atomic():
            reservation = Reservation.objects.select_for_update().get(pk=self.get_object().pk)
            if not reservation.can_transition_to(new_status):
                return Response({'error': f'Cannot move reservation from {reservation.status} to {new_status}'},
                                status=status.HTTP_409_CONFLICT)
            old_status = reservation.status
            reservation.status = new_status
            reservation.save(update_fields=['status', 'updated_at'])
            log_event(
                f'reservation.{new_status}', user=request.user, hotel_id=reservation.room.hotel_id,
                entity='reservation', entity_id=reservation.id, meta={'from': old_status},
            )
        return Response(self.get_serializer(reservation).data)

    @action(detail=True, methods=['post'], permission_classes=[IsHotelStaff])
    def confirm(self, request, pk=None):
        return self._transition(request, Reservation.Status.CONFIRMED)

    @action(detail=True, methods=['post'], permission_classes=[IsHotelStaff])
    def check_in(self, request, pk=None):
        return self._transition(request, Reservation.Status.CHECKED_IN)

    @action(detail=True, methods=['post'], permission_classes=[IsHotelStaff])
    def check_out(self, request, pk=None):
        return self._transition(request, Reservation.Status.CHECKED_OUT)

    @action(detail=True, methods=['post'], permission_classes=[IsHotelStaff])
    def cancel(self, request, pk=None):
        return self._transition(request, Reservation.Status.CANCELLED)


class PaymentViewSet(viewsets.GenericViewSet):
    serializer_class = PaymentSerializer

    def get_queryset(self):
        user = self.request.user
        qs = Payment.objects.all()
        if _is_staff(user):
            return qs
        return qs.filter(Q(intent__user=user) | Q(reservation__user=user))

    @action(detail=False, methods=['post'])
    def verify(self, request):
        """Poll the gateway for a transaction and apply the result"""
        serializer = VerifyPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        tx_ref = serializer.validated_data['tx_ref']

        try:
            payment_status = payments.apply_verify(tx_ref)
        except Payment.DoesNotExist:
            return Response({'error': 'Payment not found'}, status=status.HTTP_404_NOT_FOUND)

        return Response({'message': 'Payment verified', 'data': {'tx_ref': tx_ref, 'status': payment_status}})

    @action(detail=False, methods=['get'], url_path='status')
    def payment_status(self, request):
        """Status of the caller's own intent payment"""
        tx_ref = request.query_params.get('tx_ref')
        if not tx_ref:
            return Response({'error': 'tx_ref parameter is required'}, status=status.HTTP_400_BAD_REQUEST)

        payment = (
            Payment.objects.select_related('intent__reservation')
            .filter(transaction_reference=tx_ref, intent__user=request.user)
            .first()
        )
        if payment is None:
            return Response({'error': 'Payment not found'}, status=status.HTTP_404_NOT_FOUND)

        reservation = getattr(payment.intent, 'reservation', None)
        return Response({'data': {
            'tx_ref': tx_ref,
            'payment_status': payment.status,
            'intent_status': payment.intent.status,
            'reservation_id': reservation.id if reservation else None,
        }})

    @action(detail=True, methods=['post'])
    def refund(self, request, pk=None):
        """Refund a completed payment inside the refund window"""
        serializer = RefundPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        if not self.get_queryset().filter(pk=pk).exists():
            return Response({'error': 'Payment not found'}, status=status.HTTP_404_NOT_FOUND)

        payments.apply_refund(pk, serializer.validated_data['reason'])
        return Response({'message': 'Refund request processed successfully'})


class ChapaWebhookView(APIView):
    """Gateway callback. Always answers 200 so the gateway does not retry forever."""

    authentication_classes = []
    permission_classes = [permissions.AllowAny]

    def post(self, request):
        try:
            payload = json.loads(request.body or b'{}')
        except ValueError:
            logger.warning('Chapa webhook with undecodable body ignored')
            payload = None

        headers = {name: request.headers.get(name) for name in payments.SIGNATURE_HEADERS}
        payments.apply_webhook(payload, headers=headers)
        return Response({'message': 'Webhook received'})
