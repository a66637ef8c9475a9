import logging
import re
import secrets
import string
import time
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from .audit import log_event
from .availability import available_rooms_qs
from .chapa import get_gateway
from .exceptions import GatewayUnavailableError, IntentNotPendingError, NoAvailabilityError, ReservationAlreadyPaidError
from .models import Hotel, Payment, Reservation, ReservationIntent

logger = logging.getLogger(__name__)

E164_RE = re.compile(r'^\+[1-9]\d{1,14}$')
_TX_ALPHABET = string.ascii_letters + string.digits


def generate_tx_ref():
    random_part = ''.join(secrets.choice(_TX_ALPHABET) for _ in range(16))
    return f'TXN-{random_part}-{int(time.time())}'


def customer_details(user):
    profile = getattr(user, 'profile', None)
    return {
        'name': user.get_full_name() or user.get_username(),
        'email': user.email,
        'phone': profile.phone_number if profile else '',
    }


def validate_phone_number(user):
    phone = customer_details(user)['phone']
    if not phone:
        raise ValidationError({'phone_number': 'Please complete your profile by adding a phone number before making a reservation.'})
    if not E164_RE.match(phone):
        raise ValidationError({'phone_number': 'Your phone number is not in a valid format (E.164, e.g. +251912345678).'})


def create_intent(user, hotel_id, room_type, check_in, check_out, guests, now=None):
    """
    Validate a booking request and record a provisional intent for it.

    No room is pinned here: availability is re-checked when the payment
    settles and a room gets assigned.
    """
    now = now or timezone.now()
    today = timezone.localdate(now)

    if check_in <= today:
        raise ValidationError({'check_in': 'Check-in date must be in the future'})
    if check_out <= check_in:
        raise ValidationError({'check_out': 'Check-out date must be after check-in date'})
    if guests < 1:
        raise ValidationError({'guests': 'At least one guest is required'})
    validate_phone_number(user)

    hotel = Hotel.objects.get(pk=hotel_id)
    nights = max(1, (check_out - check_in).days)

    room = available_rooms_qs(hotel.id, room_type, check_in, check_out).first()
    if room is None:
        raise NoAvailabilityError()

    with transaction.atomic():
        intent = ReservationIntent.objects.create(
            user=user,
            hotel=hotel,
            room_type=room_type,
            check_in=check_in,
            check_out=check_out,
            nights=nights,
            guests=guests,
            total_amount=room.price * nights,
            currency=settings.DEFAULT_CURRENCY,
            status=ReservationIntent.Status.PENDING,
            expires_at=now + timedelta(hours=settings.INTENT_TTL_HOURS),
        )
        log_event(
            'reservation_intent.created', user=user, hotel_id=hotel.id,
            entity='reservation_intent', entity_id=intent.id,
            meta={'room_type': room_type, 'nights': nights, 'total_amount': str(intent.total_amount)},
        )
    return intent


def assert_not_already_paid(reservation):
    if reservation.payment_status == Reservation.PaymentStatus.PAID:
        raise ReservationAlreadyPaidError()


def _start_payment(owner_fields, amount, currency, customer, callback_url, return_url, gateway, now):
    # The row is committed before the gateway call so a failed call leaves a record to reconcile.
    with transaction.atomic():
        payment = Payment.objects.create(
            amount=amount,
            currency=currency,
            method=Payment.Method.CHAPA,
            status=Payment.Status.INITIATED,
            transaction_reference=generate_tx_ref(),
            meta={'created_at': now.isoformat()},
            **owner_fields,
        )

    gateway = gateway or get_gateway()
    try:
        result = gateway.initialize(
            tx_ref=payment.transaction_reference,
            amount=amount,
            currency=currency,
            customer=customer,
            callback_url=callback_url,
            return_url=return_url,
        )
    except GatewayUnavailableError as e:
        payment.append_meta('init_errors', {'error': str(e.detail), 'at': now.isoformat()})
        payment.save(update_fields=['meta', 'updated_at'])
        logger.warning('Payment %s left initiated: %s', payment.transaction_reference, e.detail)
        raise

    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment.pk)
        if payment.status == Payment.Status.INITIATED:
            payment.status = Payment.Status.PENDING
        payment.merge_meta(chapa_init_response={'checkout_url': result.checkout_url, 'status': result.status})
        payment.save(update_fields=['status', 'meta', 'updated_at'])
    return payment, result


def initiate_intent_payment(intent, callback_url, return_url, gateway=None, now=None):
    now = now or timezone.now()
    if intent.status != ReservationIntent.Status.PENDING or intent.is_expired(now):
        raise IntentNotPendingError()

    payment, result = _start_payment(
        {'intent': intent}, intent.total_amount, intent.currency, customer_details(intent.user),
        callback_url, return_url, gateway, now,
    )
    log_event(
        'payment.initiated', user=intent.user, hotel_id=intent.hotel_id,
        entity='payment', entity_id=payment.id, meta={'tx_ref': payment.transaction_reference},
    )
    return payment, result


def initiate_reservation_payment(reservation, callback_url, return_url, gateway=None, now=None):
    now = now or timezone.now()
    assert_not_already_paid(reservation)

    if reservation.user_id:
        customer = customer_details(reservation.user)
    else:
        customer = {'name': 'Guest', 'email': '', 'phone': ''}
    customer = {
        'name': reservation.guest_name or customer['name'],
        'email': reservation.guest_email or customer['email'],
        'phone': reservation.guest_phone or customer['phone'],
    }

    payment, result = _start_payment(
        {'reservation': reservation}, reservation.total_amount, settings.DEFAULT_CURRENCY, customer,
        callback_url, return_url, gateway, now,
    )
    log_event(
        'payment.initiated', user=reservation.user, hotel_id=reservation.room.hotel_id,
        entity='payment', entity_id=payment.id, meta={'tx_ref': payment.transaction_reference},
    )
    return payment, result
