"""
Payment state machine.

    initiated -> pending -> completed | failed
    completed/paid -> refunded

Webhook deliveries and verify calls both end up in _apply_gateway_status,
which locks the Payment row by transaction_reference and only moves a payment
that is not yet terminal. Whichever caller gets the lock first performs the
transition; later callers only append their snapshot to Payment.meta.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .audit import log_event
from .availability import available_rooms_qs
from .chapa import get_gateway
from .exceptions import GatewayUnavailableError, NoAvailabilityError, PaymentNotCompletedError, RefundWindowExpiredError
from .models import IntentOwner, Payment, Reservation, ReservationIntent, ReservationOwner

logger = logging.getLogger(__name__)

GATEWAY_STATUS_MAP = {
    'success': Payment.Status.COMPLETED,
    'successful': Payment.Status.COMPLETED,
    'completed': Payment.Status.COMPLETED,
    'failed': Payment.Status.FAILED,
    'cancelled': Payment.Status.FAILED,
}

SIGNATURE_HEADERS = ('Chapa-Signature', 'X-Chapa-Signature')

AMOUNT_TOLERANCE = Decimal('0.01')


def map_gateway_status(gateway_status):
    """Unknown, missing or non-string statuses keep the payment pending."""
    value = gateway_status if isinstance(gateway_status, str) else ''
    return GATEWAY_STATUS_MAP.get(value.strip().lower(), Payment.Status.PENDING)


@dataclass
class TransitionResult:
    payment: Payment
    changed: bool


def _reported_mismatch(payment, snapshot):
    """Compare the amount/currency the gateway reports against what we asked for."""
    data = snapshot.get('data') if isinstance(snapshot.get('data'), dict) else snapshot
    reported_amount = data.get('amount')
    reported_currency = data.get('currency')

    if reported_amount not in (None, ''):
        try:
            amount = Decimal(str(reported_amount))
        except InvalidOperation:
            return f'Unreadable amount {reported_amount!r}'
        if not amount.is_finite():
            return f'Unreadable amount {reported_amount!r}'
        if abs(amount - payment.amount) > AMOUNT_TOLERANCE:
            return f'Amount mismatch: expected {payment.amount}, gateway reported {amount}'

    if reported_currency and str(reported_currency).upper() != payment.currency.upper():
        return f'Currency mismatch: expected {payment.currency}, gateway reported {reported_currency}'
    return None


def _assign_room(intent):
    room = (
        available_rooms_qs(intent.hotel_id, intent.room_type, intent.check_in, intent.check_out)
        .select_for_update()
        .first()
    )
    if room is None:
        raise NoAvailabilityError('No available room found for reservation intent')
    return room


def _confirm_intent(intent, now):
    intent.status = ReservationIntent.Status.CONFIRMED
    intent.save(update_fields=['status', 'updated_at'])

    room = _assign_room(intent)
    user = intent.user
    profile = getattr(user, 'profile', None)
    reservation = Reservation.objects.create(
        room=room,
        user=user,
        intent=intent,
        guest_name=user.get_full_name() or user.get_username(),
        guest_email=user.email,
        guest_phone=profile.phone_number if profile else '',
        check_in=intent.check_in,
        check_out=intent.check_out,
        guests=intent.guests,
        status=Reservation.Status.CONFIRMED,
        total_amount=intent.total_amount,
    )
    reservation.calculate_payment_status()
    logger.info('Reservation %s confirmed for intent %s on room %s', reservation.id, intent.id, room.id)
    return reservation


def _cascade(payment, now):
    owner = payment.owner
    if isinstance(owner, ReservationOwner):
        reservation = Reservation.objects.select_for_update().get(pk=owner.reservation_id)
        reservation.calculate_payment_status()
    elif isinstance(owner, IntentOwner):
        intent = ReservationIntent.objects.select_for_update().get(pk=owner.intent_id)
        if intent.status != ReservationIntent.Status.PENDING:
            logger.warning('Intent %s is %s, not cascading payment %s', intent.id, intent.status, payment.id)
            return
        if payment.is_settled:
            _confirm_intent(intent, now)
        elif payment.status == Payment.Status.FAILED:
            intent.status = ReservationIntent.Status.FAILED
            intent.save(update_fields=['status', 'updated_at'])


def _event(gateway_status, snapshot, now, **extra):
    return dict({'gateway_status': gateway_status, 'payload': snapshot, 'processed_at': now.isoformat()}, **extra)


def _record_rejected_event(tx_ref, source, gateway_status, snapshot, now, error):
    """Keep the gateway snapshot when the transition itself was rolled back."""
    with transaction.atomic():
        payment = Payment.objects.select_for_update().filter(transaction_reference=tx_ref).first()
        if payment is None:
            return
        payment.append_meta(f'{source}_events', _event(gateway_status, snapshot, now, error=error))
        payment.save(update_fields=['meta', 'updated_at'])


def _apply_gateway_status(tx_ref, gateway_status, source, snapshot, now):
    with transaction.atomic():
        payment = Payment.objects.select_for_update().filter(transaction_reference=tx_ref).first()
        if payment is None:
            return None

        payment.append_meta(f'{source}_events', _event(gateway_status, snapshot, now))

        if payment.is_terminal:
            logger.info('Payment %s already %s, ignoring %s', tx_ref, payment.status, source)
            payment.save(update_fields=['meta', 'updated_at'])
            return TransitionResult(payment, changed=False)

        new_status = map_gateway_status(gateway_status)
        if new_status == Payment.Status.COMPLETED:
            mismatch = _reported_mismatch(payment, snapshot)
            if mismatch:
                logger.error('Payment %s rejected: %s', tx_ref, mismatch)
                payment.merge_meta(mismatch=mismatch)
                new_status = Payment.Status.FAILED

        changed = new_status != payment.status
        payment.status = new_status
        if new_status == Payment.Status.COMPLETED:
            payment.paid_at = now
        payment.save(update_fields=['status', 'paid_at', 'meta', 'updated_at'])

        if payment.is_terminal:
            _cascade(payment, now)
            log_event(
                f'payment.{payment.status}', entity='payment', entity_id=payment.id,
                meta={'tx_ref': tx_ref, 'source': source},
            )
        return TransitionResult(payment, changed=changed)


def apply_webhook(payload, headers=None, gateway=None, now=None):
    """
    Process a gateway callback. Never raises for bad or unknown payloads: the
    gateway cannot fix them by retrying.
    """
    now = now or timezone.now()
    headers = headers or {}
    if not isinstance(payload, dict):
        logger.warning('Chapa webhook with non-object payload ignored')
        return None

    tx_ref = payload.get('tx_ref') or payload.get('trx_ref')
    if not tx_ref or not isinstance(tx_ref, str):
        logger.warning('Chapa webhook missing tx_ref: %s', payload)
        return None

    # TODO: verify signatures once Chapa's signing scheme and secret handling are agreed with ops.
    has_signature = any(headers.get(name) for name in SIGNATURE_HEADERS)
    snapshot = dict(payload, signature_present=has_signature)

    gateway_status = payload.get('status')
    if settings.CHAPA_WEBHOOK_VERIFY_WITH_GATEWAY:
        try:
            verification = (gateway or get_gateway()).verify(tx_ref)
        except GatewayUnavailableError as e:
            logger.warning('Chapa webhook for %s could not be verified: %s', tx_ref, e.detail)
            gateway_status = None
        else:
            gateway_status = verification.gateway_status
            snapshot['verification'] = verification.raw

    try:
        result = _apply_gateway_status(tx_ref, gateway_status, 'webhook', snapshot, now)
    except NoAvailabilityError as e:
        # the payment stays pending until staff reconcile it or a verify call succeeds
        logger.exception('Chapa webhook for %s: settled payment but no room left to assign', tx_ref)
        _record_rejected_event(tx_ref, 'webhook', gateway_status, snapshot, now, str(e.detail))
        return None
    if result is None:
        logger.warning('Chapa webhook: payment not found for tx_ref %s', tx_ref)
    return result


def apply_verify(tx_ref, gateway=None, now=None):
    """Ask the gateway for the transaction status and apply it. Returns the payment status."""
    now = now or timezone.now()
    # fail fast before spending a gateway call on an unknown reference
    Payment.objects.only('id').get(transaction_reference=tx_ref)

    verification = (gateway or get_gateway()).verify(tx_ref)
    try:
        result = _apply_gateway_status(tx_ref, verification.gateway_status, 'verify', verification.raw, now)
    except NoAvailabilityError as e:
        _record_rejected_event(tx_ref, 'verify', verification.gateway_status, verification.raw, now, str(e.detail))
        raise
    if result is None:
        raise Payment.DoesNotExist(tx_ref)
    return result.payment.status


def apply_refund(payment_id, reason, gateway=None, now=None):
    now = now or timezone.now()
    window = timedelta(hours=settings.REFUND_WINDOW_HOURS)

    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment_id)

        if not payment.is_settled:
            raise PaymentNotCompletedError()
        if payment.paid_at is None:
            raise RefundWindowExpiredError('Payment completion time is not recorded')
        if now > payment.paid_at + window:
            raise RefundWindowExpiredError()

        (gateway or get_gateway()).refund(payment.transaction_reference, reason)

        payment.status = Payment.Status.REFUNDED
        payment.merge_meta(refunded_at=now.isoformat(), refund_reason=reason)
        payment.save(update_fields=['status', 'meta', 'updated_at'])

        owner = payment.owner
        if isinstance(owner, ReservationOwner):
            Reservation.objects.filter(pk=owner.reservation_id).update(
                payment_status=Reservation.PaymentStatus.REFUNDED, updated_at=now,
            )
        else:
            ReservationIntent.objects.filter(pk=owner.intent_id).update(
                status=ReservationIntent.Status.FAILED, updated_at=now,
            )
            Reservation.objects.filter(intent_id=owner.intent_id).update(
                payment_status=Reservation.PaymentStatus.REFUNDED, updated_at=now,
            )

        log_event(
            'payment.refunded', entity='payment', entity_id=payment.id,
            meta={'tx_ref': payment.transaction_reference, 'reason': reason},
        )
    return payment
