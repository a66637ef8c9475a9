from datetime import date, timedelta
from decimal import Decimal
from concurrent.futures import ThreadPoolExecutor, as_completed
from unittest import skipUnless
from unittest.mock import Mock, patch

import requests
from django.contrib.auth import get_user_model
from django.core.exceptions import ImproperlyConfigured
from django.db import connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.exceptions import ValidationError
from rest_framework.test import APITestCase

from . import availability
from .chapa import ChapaClient, InitiateResult, VerifyResult
from .exceptions import (
    GatewayUnavailableError,
    IntentNotPendingError,
    NoAvailabilityError,
    PaymentNotCompletedError,
    RefundWindowExpiredError,
    ReservationAlreadyPaidError,
)
from .intents import create_intent, generate_tx_ref, initiate_intent_payment, initiate_reservation_payment
from .models import AuditLog, Hotel, Payment, Reservation, ReservationIntent, Room, UserProfile
from .payments import apply_refund, apply_verify, apply_webhook, map_gateway_status

User = get_user_model()

CALLBACK_URL = 'https://hotel.example/api/webhooks/chapa/'
RETURN_URL = 'https://hotel.example/payment/complete'


def make_user(username, phone='+251912345678', role=UserProfile.Role.CLIENT, hotel=None):
    user = User.objects.create_user(username=username, email=f'{username}@example.com', password='secret')
    if phone is not None:
        UserProfile.objects.create(user=user, role=role, phone_number=phone, hotel=hotel)
    return user


def make_gateway():
    """Gateway double that accepts every checkout."""
    gateway = Mock(spec=ChapaClient)
    gateway.initialize.side_effect = lambda **kwargs: InitiateResult(
        checkout_url=f"https://checkout.chapa.co/checkout/payment/{kwargs['tx_ref']}",
        tx_ref=kwargs['tx_ref'],
        status='success',
    )
    return gateway


def verify_result(tx_ref, gateway_status, amount='3000.00', currency='ETB'):
    return VerifyResult(tx_ref=tx_ref, gateway_status=gateway_status, raw={
        'status': 'success',
        'data': {'tx_ref': tx_ref, 'status': gateway_status, 'amount': amount, 'currency': currency},
    })


class HotelFixtureMixin:
    """One hotel with two Standard rooms and a client that has a valid phone number"""

    def make_fixtures(self):
        self.today = timezone.localdate()
        self.now = timezone.now()
        self.hotel = Hotel.objects.create(name='Blue Nile Hotel', phone='+251111000001')
        self.room1 = Room.objects.create(hotel=self.hotel, number='101', type='Standard', price=Decimal('1500.00'), capacity=2)
        self.room2 = Room.objects.create(hotel=self.hotel, number='102', type='Standard', price=Decimal('1500.00'), capacity=2)
        self.user = make_user('abebe')

    def make_intent(self, room_type='Standard', nights=2, start_in=1, user=None):
        check_in = self.today + timedelta(days=start_in)
        return ReservationIntent.objects.create(
            user=user or self.user,
            hotel=self.hotel,
            room_type=room_type,
            check_in=check_in,
            check_out=check_in + timedelta(days=nights),
            nights=nights,
            guests=1,
            total_amount=Decimal('1500.00') * nights,
            expires_at=self.now + timedelta(hours=24),
        )

    def make_reservation(self, room=None, start_in=1, nights=2, **kwargs):
        check_in = self.today + timedelta(days=start_in)
        fields = {
            'room': room or self.room1,
            'user': self.user,
            'check_in': check_in,
            'check_out': check_in + timedelta(days=nights),
            'total_amount': Decimal('3000.00'),
            'status': Reservation.Status.CONFIRMED,
        }
        fields.update(kwargs)
        return Reservation.objects.create(**fields)

    def make_payment(self, tx_ref, status=Payment.Status.PENDING, **owner):
        return Payment.objects.create(
            amount=Decimal('3000.00'),
            currency='ETB',
            status=status,
            transaction_reference=tx_ref,
            **owner,
        )


class OverlapRuleTestCase(SimpleTestCase):

    def test_overlap_is_inclusive(self):
        """Intervals sharing a boundary day overlap"""
        d = date(2026, 3, 10)
        scenarios = [
            {'other': (d, d + timedelta(days=2)), 'expected': True, 'description': 'identical'},
            {'other': (d + timedelta(days=2), d + timedelta(days=4)), 'expected': True, 'description': 'touching at check-out'},
            {'other': (d - timedelta(days=3), d), 'expected': True, 'description': 'touching at check-in'},
            {'other': (d - timedelta(days=1), d + timedelta(days=5)), 'expected': True, 'description': 'encloses'},
            {'other': (d + timedelta(days=3), d + timedelta(days=5)), 'expected': False, 'description': 'after'},
            {'other': (d - timedelta(days=4), d - timedelta(days=1)), 'expected': False, 'description': 'before'},
        ]
        for scenario in scenarios:
            with self.subTest(scenario=scenario['description']):
                other_start, other_end = scenario['other']
                self.assertEqual(
                    availability.overlaps(d, d + timedelta(days=2), other_start, other_end),
                    scenario['expected'],
                )


class AvailabilityTestCase(HotelFixtureMixin, TestCase):
    """Free-room search and the calendar views built on it"""

    def setUp(self):
        self.make_fixtures()

    def test_active_reservation_blocks_room(self):
        self.make_reservation(room=self.room1, start_in=1, nights=2)

        free = availability.find_free_rooms(
            self.hotel.id, 'Standard', self.today + timedelta(days=2), self.today + timedelta(days=4),
        )
        self.assertEqual(free, [self.room2.id])

    def test_touching_dates_block_room(self):
        """A stay starting on another stay's check-out day conflicts"""
        self.make_reservation(room=self.room1, start_in=1, nights=2)
        self.make_reservation(room=self.room2, start_in=1, nights=2)

        touching = availability.find_free_rooms(
            self.hotel.id, 'Standard', self.today + timedelta(days=3), self.today + timedelta(days=5),
        )
        self.assertEqual(touching, [])

        later = availability.find_free_rooms(
            self.hotel.id, 'Standard', self.today + timedelta(days=4), self.today + timedelta(days=6),
        )
        self.assertEqual(later, [self.room1.id, self.room2.id])

    def test_inactive_reservations_do_not_block(self):
        reservation = self.make_reservation(room=self.room1)
        self.room2.status = Room.Status.MAINTENANCE
        self.room2.save()

        for reservation_status in (Reservation.Status.CANCELLED, Reservation.Status.CHECKED_OUT):
            with self.subTest(status=reservation_status):
                reservation.status = reservation_status
                reservation.save()
                free = availability.find_free_rooms(
                    self.hotel.id, 'Standard', reservation.check_in, reservation.check_out,
                )
                self.assertEqual(free, [self.room1.id])

        for reservation_status in Reservation.ACTIVE_STATUSES:
            with self.subTest(status=reservation_status):
                reservation.status = reservation_status
                reservation.save()
                free = availability.find_free_rooms(
                    self.hotel.id, 'Standard', reservation.check_in, reservation.check_out,
                )
                self.assertEqual(free, [])

    def test_unbookable_rooms_and_other_hotels_excluded(self):
        self.room1.status = Room.Status.MAINTENANCE
        self.room1.save()
        other_hotel = Hotel.objects.create(name='Other', phone='+251111000002')
        Room.objects.create(hotel=other_hotel, number='101', type='Standard', price=Decimal('900.00'))
        Room.objects.create(hotel=self.hotel, number='201', type='Deluxe', price=Decimal('2500.00'))

        free = availability.find_free_rooms(
            self.hotel.id, 'Standard', self.today + timedelta(days=1), self.today + timedelta(days=2),
        )
        self.assertEqual(free, [self.room2.id])

    def test_calendar_agrees_with_direct_queries(self):
        """A date is disabled exactly when the free-room search comes back empty"""
        self.make_reservation(room=self.room1, start_in=2, nights=2)
        self.make_reservation(room=self.room2, start_in=3, nights=2)
        days = 10

        disabled_in = set(availability.disabled_check_in_dates(self.hotel.id, 'Standard', self.today, days))
        for offset in range(days):
            day = self.today + timedelta(days=offset)
            with self.subTest(check_in=day):
                no_room = not availability.find_free_rooms(self.hotel.id, 'Standard', day, day + timedelta(days=1))
                self.assertEqual(day in disabled_in, no_room)

        disabled_out = set(availability.disabled_check_out_dates(self.hotel.id, 'Standard', self.today, days))
        for offset in range(1, days + 1):
            day = self.today + timedelta(days=offset)
            with self.subTest(check_out=day):
                no_room = not availability.find_free_rooms(self.hotel.id, 'Standard', self.today, day)
                self.assertEqual(day in disabled_out, no_room)

        self.assertIn(self.today + timedelta(days=3), disabled_in)
        self.assertNotIn(self.today + timedelta(days=6), disabled_in)

    def test_zero_rooms_disables_every_date(self):
        check_in_dates = availability.disabled_check_in_dates(self.hotel.id, 'Penthouse', self.today, 5)
        check_out_dates = availability.disabled_check_out_dates(self.hotel.id, 'Penthouse', self.today, 5)

        self.assertEqual(check_in_dates, [self.today + timedelta(days=i) for i in range(5)])
        self.assertEqual(check_out_dates, [self.today + timedelta(days=i) for i in range(1, 6)])

    def test_availability_by_type_counts_rooms_per_day(self):
        self.room2.price = Decimal('1200.00')
        self.room2.save()
        start = self.today + timedelta(days=1)
        # occupies room2 from check-in through check-out day
        self.make_reservation(room=self.room2, start_in=1, nights=1)

        result = availability.availability_by_type(self.hotel.id, start, start + timedelta(days=2))

        self.assertEqual(len(result), 1)
        self.assertEqual(result[0]['type'], 'Standard')
        days = result[0]['days']
        self.assertEqual([d['rooms_available'] for d in days], [1, 1, 2])
        self.assertEqual([d['price'] for d in days], [Decimal('1500.00'), Decimal('1500.00'), Decimal('1200.00')])


class ReservationIntentTestCase(HotelFixtureMixin, TestCase):
    """Intent creation and payment initiation"""

    def setUp(self):
        self.make_fixtures()
        self.gateway = make_gateway()

    def test_end_to_end_booking_flow(self):
        """Intent, checkout, webhook confirmation and a refund attempt after the window"""
        check_in = self.today + timedelta(days=1)
        intent = create_intent(self.user, self.hotel.id, 'Standard', check_in, check_in + timedelta(days=2), 1, now=self.now)

        self.assertEqual(intent.nights, 2)
        self.assertEqual(intent.status, ReservationIntent.Status.PENDING)
        self.assertEqual(intent.total_amount, Decimal('3000.00'))
        self.assertEqual(intent.currency, 'ETB')
        self.assertEqual(intent.expires_at, self.now + timedelta(hours=24))

        seen = {}

        def initialize(**kwargs):
            seen['status'] = Payment.objects.get(transaction_reference=kwargs['tx_ref']).status
            return InitiateResult('https://checkout.chapa.co/checkout/payment/abc', kwargs['tx_ref'], 'success')

        self.gateway.initialize.side_effect = initialize
        payment, result = initiate_intent_payment(intent, CALLBACK_URL, RETURN_URL, gateway=self.gateway, now=self.now)

        self.assertEqual(seen['status'], Payment.Status.INITIATED)
        self.assertEqual(payment.status, Payment.Status.PENDING)
        self.assertEqual(payment.intent, intent)
        self.assertEqual(result.checkout_url, 'https://checkout.chapa.co/checkout/payment/abc')

        paid_at = self.now + timedelta(hours=1)
        apply_webhook({'tx_ref': payment.transaction_reference, 'status': 'success'}, now=paid_at)

        payment.refresh_from_db()
        intent.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.COMPLETED)
        self.assertEqual(payment.paid_at, paid_at)
        self.assertEqual(intent.status, ReservationIntent.Status.CONFIRMED)
        reservation = intent.reservation
        self.assertEqual(reservation.status, Reservation.Status.CONFIRMED)
        self.assertEqual(reservation.payment_status, Reservation.PaymentStatus.PAID)
        self.assertEqual(reservation.room, self.room1)

        with self.assertRaises(RefundWindowExpiredError):
            apply_refund(payment.id, 'Plans changed', gateway=self.gateway, now=paid_at + timedelta(hours=25))
        self.gateway.refund.assert_not_called()

    def test_rejects_invalid_dates(self):
        scenarios = [
            {'check_in': self.today, 'check_out': self.today + timedelta(days=2), 'description': 'today'},
            {'check_in': self.today - timedelta(days=1), 'check_out': self.today + timedelta(days=2), 'description': 'past'},
            {'check_in': self.today + timedelta(days=2), 'check_out': self.today + timedelta(days=2), 'description': 'zero nights'},
            {'check_in': self.today + timedelta(days=3), 'check_out': self.today + timedelta(days=2), 'description': 'reversed'},
        ]
        for scenario in scenarios:
            with self.subTest(scenario=scenario['description']):
                with self.assertRaises(ValidationError):
                    create_intent(self.user, self.hotel.id, 'Standard', scenario['check_in'], scenario['check_out'], 1)
        self.assertFalse(ReservationIntent.objects.exists())

    def test_requires_e164_phone_number(self):
        check_in = self.today + timedelta(days=1)
        users = {
            'no profile': make_user('noprofile', phone=None),
            'empty phone': make_user('emptyphone', phone=''),
            'local format': make_user('localphone', phone='0912345678'),
        }
        for description, user in users.items():
            with self.subTest(scenario=description):
                with self.assertRaises(ValidationError) as ctx:
                    create_intent(user, self.hotel.id, 'Standard', check_in, check_in + timedelta(days=1), 1)
                self.assertIn('phone_number', ctx.exception.detail)

    def test_no_availability_creates_nothing(self):
        self.make_reservation(room=self.room1)
        self.make_reservation(room=self.room2)

        with self.assertRaises(NoAvailabilityError):
            create_intent(
                self.user, self.hotel.id, 'Standard',
                self.today + timedelta(days=1), self.today + timedelta(days=3), 1,
            )
        self.assertFalse(ReservationIntent.objects.exists())

    def test_price_taken_from_lowest_id_free_room(self):
        """With rooms at 100 and 120 a two night stay costs 200 or 240; the lowest id wins"""
        Room.objects.create(hotel=self.hotel, number='301', type='Deluxe', price=Decimal('100.00'))
        Room.objects.create(hotel=self.hotel, number='302', type='Deluxe', price=Decimal('120.00'))
        check_in = self.today + timedelta(days=1)

        intent = create_intent(self.user, self.hotel.id, 'Deluxe', check_in, check_in + timedelta(days=2), 2)

        self.assertIn(intent.total_amount, {Decimal('200.00'), Decimal('240.00')})
        self.assertEqual(intent.total_amount, Decimal('200.00'))

    def test_intent_does_not_hold_a_room(self):
        """Two intents may race for the last room; the second payment to settle finds nothing left"""
        Room.objects.create(hotel=self.hotel, number='501', type='Suite', price=Decimal('4000.00'))
        check_in = self.today + timedelta(days=5)
        other = make_user('almaz')

        first = create_intent(self.user, self.hotel.id, 'Suite', check_in, check_in + timedelta(days=1), 1)
        second = create_intent(other, self.hotel.id, 'Suite', check_in, check_in + timedelta(days=1), 1)
        first_payment, _ = initiate_intent_payment(first, CALLBACK_URL, RETURN_URL, gateway=self.gateway)
        second_payment, _ = initiate_intent_payment(second, CALLBACK_URL, RETURN_URL, gateway=self.gateway)

        apply_webhook({'tx_ref': first_payment.transaction_reference, 'status': 'success'})
        result = apply_webhook({'tx_ref': second_payment.transaction_reference, 'status': 'success'})

        self.assertIsNone(result)
        second_payment.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual(second_payment.status, Payment.Status.PENDING)
        self.assertEqual(second.status, ReservationIntent.Status.PENDING)
        self.assertEqual(Reservation.objects.filter(room__type='Suite').count(), 1)
        # the rejected delivery is still on record
        events = second_payment.meta['webhook_events']
        self.assertEqual(len(events), 1)
        self.assertIn('No available room', events[0]['error'])

    def test_gateway_failure_leaves_initiated_payment(self):
        intent = self.make_intent()
        self.gateway.initialize.side_effect = GatewayUnavailableError('Failed to communicate with Chapa API: timeout')

        with self.assertRaises(GatewayUnavailableError):
            initiate_intent_payment(intent, CALLBACK_URL, RETURN_URL, gateway=self.gateway)

        payment = Payment.objects.get(intent=intent)
        self.assertEqual(payment.status, Payment.Status.INITIATED)
        self.assertEqual(len(payment.meta['init_errors']), 1)

    def test_expired_intent_cannot_start_payment(self):
        intent = self.make_intent()

        with self.assertRaises(IntentNotPendingError):
            initiate_intent_payment(
                intent, CALLBACK_URL, RETURN_URL, gateway=self.gateway, now=intent.expires_at + timedelta(seconds=1),
            )
        self.assertFalse(Payment.objects.exists())

    def test_paid_reservation_cannot_start_payment(self):
        reservation = self.make_reservation(payment_status=Reservation.PaymentStatus.PAID)

        with self.assertRaises(ReservationAlreadyPaidError):
            initiate_reservation_payment(reservation, CALLBACK_URL, RETURN_URL, gateway=self.gateway)

        self.assertFalse(Payment.objects.exists())
        self.gateway.initialize.assert_not_called()

    def test_reservation_payment_goes_pending(self):
        reservation = self.make_reservation(status=Reservation.Status.PENDING)

        payment, _ = initiate_reservation_payment(reservation, CALLBACK_URL, RETURN_URL, gateway=self.gateway)

        self.assertEqual(payment.reservation, reservation)
        self.assertIsNone(payment.intent)
        self.assertEqual(payment.status, Payment.Status.PENDING)
        self.assertEqual(payment.amount, reservation.total_amount)
        self.assertTrue(payment.transaction_reference.startswith('TXN-'))

    def test_transaction_references_are_unique(self):
        refs = {generate_tx_ref() for _ in range(50)}
        self.assertEqual(len(refs), 50)


class WebhookTestCase(HotelFixtureMixin, TestCase):
    """Gateway callbacks move payments exactly once"""

    def setUp(self):
        self.make_fixtures()
        self.intent = self.make_intent()
        self.payment = self.make_payment('TXN-webhook-1', intent=self.intent)

    def test_duplicate_delivery_transitions_once(self):
        payload = {'tx_ref': 'TXN-webhook-1', 'status': 'success'}
        first_at = self.now + timedelta(minutes=1)

        first = apply_webhook(payload, now=first_at)
        second = apply_webhook(payload, now=first_at + timedelta(minutes=5))

        self.assertTrue(first.changed)
        self.assertFalse(second.changed)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.COMPLETED)
        self.assertEqual(self.payment.paid_at, first_at)
        self.assertEqual(len(self.payment.meta['webhook_events']), 2)
        self.assertEqual(Reservation.objects.filter(intent=self.intent).count(), 1)
        self.assertEqual(AuditLog.objects.filter(action='payment.completed').count(), 1)

    def test_unknown_or_missing_reference_is_ignored(self):
        payloads = {
            'unknown tx_ref': {'tx_ref': 'TXN-nope', 'status': 'success'},
            'missing tx_ref': {'status': 'success'},
            'not an object': ['garbage'],
            'no body': None,
        }
        for description, payload in payloads.items():
            with self.subTest(scenario=description):
                self.assertIsNone(apply_webhook(payload))

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.PENDING)

    def test_trx_ref_alias_accepted(self):
        apply_webhook({'trx_ref': 'TXN-webhook-1', 'status': 'failed'})

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.FAILED)

    def test_failed_payment_fails_intent(self):
        apply_webhook({'tx_ref': 'TXN-webhook-1', 'status': 'cancelled'})

        self.payment.refresh_from_db()
        self.intent.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.FAILED)
        self.assertIsNone(self.payment.paid_at)
        self.assertEqual(self.intent.status, ReservationIntent.Status.FAILED)
        self.assertFalse(Reservation.objects.filter(intent=self.intent).exists())

    def test_unrecognised_status_keeps_payment_open(self):
        self.payment.status = Payment.Status.INITIATED
        self.payment.save()

        result = apply_webhook({'tx_ref': 'TXN-webhook-1', 'status': 'processing'})
        self.assertEqual(result.payment.status, Payment.Status.PENDING)

        apply_webhook({'tx_ref': 'TXN-webhook-1', 'status': 'Success'})
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.COMPLETED)

    def test_amount_mismatch_fails_payment(self):
        apply_webhook({'tx_ref': 'TXN-webhook-1', 'status': 'success', 'amount': '1.00', 'currency': 'ETB'})

        self.payment.refresh_from_db()
        self.intent.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.FAILED)
        self.assertIn('mismatch', self.payment.meta)
        self.assertEqual(self.intent.status, ReservationIntent.Status.FAILED)

    def test_currency_mismatch_fails_payment(self):
        apply_webhook({'tx_ref': 'TXN-webhook-1', 'status': 'success', 'amount': '3000.00', 'currency': 'USD'})

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.FAILED)

    def test_reservation_payment_recomputes_reservation(self):
        reservation = self.make_reservation(status=Reservation.Status.PENDING)
        self.make_payment('TXN-webhook-2', reservation=reservation)

        apply_webhook({'tx_ref': 'TXN-webhook-2', 'status': 'successful'})

        reservation.refresh_from_db()
        self.assertEqual(reservation.payment_status, Reservation.PaymentStatus.PAID)

    def test_signature_presence_recorded(self):
        apply_webhook({'tx_ref': 'TXN-webhook-1', 'status': 'success'}, headers={'Chapa-Signature': 'abc'})

        self.payment.refresh_from_db()
        self.assertTrue(self.payment.meta['webhook_events'][0]['payload']['signature_present'])

    @override_settings(CHAPA_WEBHOOK_VERIFY_WITH_GATEWAY=True)
    def test_gateway_verification_overrides_payload(self):
        gateway = Mock(spec=ChapaClient)
        gateway.verify.return_value = verify_result('TXN-webhook-1', 'failed')

        apply_webhook({'tx_ref': 'TXN-webhook-1', 'status': 'success'}, gateway=gateway)

        gateway.verify.assert_called_once_with('TXN-webhook-1')
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.FAILED)


class GatewayStatusMappingTestCase(SimpleTestCase):

    def test_status_mapping(self):
        scenarios = [
            ('success', Payment.Status.COMPLETED),
            ('SUCCESS', Payment.Status.COMPLETED),
            ('Successful', Payment.Status.COMPLETED),
            ('completed', Payment.Status.COMPLETED),
            ('failed', Payment.Status.FAILED),
            ('CANCELLED', Payment.Status.FAILED),
            ('processing', Payment.Status.PENDING),
            ('', Payment.Status.PENDING),
            (None, Payment.Status.PENDING),
            (1, Payment.Status.PENDING),
            (['success'], Payment.Status.PENDING),
            ({'status': 'success'}, Payment.Status.PENDING),
        ]
        for gateway_status, expected in scenarios:
            with self.subTest(gateway_status=gateway_status):
                self.assertEqual(map_gateway_status(gateway_status), expected)


class VerifyTestCase(HotelFixtureMixin, TestCase):
    """Polling the gateway shares the webhook transition"""

    def setUp(self):
        self.make_fixtures()
        self.intent = self.make_intent()
        self.payment = self.make_payment('TXN-verify-1', intent=self.intent)
        self.gateway = Mock(spec=ChapaClient)
        self.gateway.verify.return_value = verify_result('TXN-verify-1', 'success')

    def test_verify_completes_payment(self):
        self.assertEqual(apply_verify('TXN-verify-1', gateway=self.gateway), Payment.Status.COMPLETED)

        self.intent.refresh_from_db()
        self.assertEqual(self.intent.status, ReservationIntent.Status.CONFIRMED)
        self.assertEqual(self.intent.reservation.payment_status, Reservation.PaymentStatus.PAID)

    def test_verify_then_webhook_single_transition(self):
        verified_at = self.now + timedelta(minutes=1)

        apply_verify('TXN-verify-1', gateway=self.gateway, now=verified_at)
        apply_webhook({'tx_ref': 'TXN-verify-1', 'status': 'success'}, now=verified_at + timedelta(seconds=5))

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.paid_at, verified_at)
        self.assertEqual(len(self.payment.meta['verify_events']), 1)
        self.assertEqual(len(self.payment.meta['webhook_events']), 1)
        self.assertEqual(Reservation.objects.filter(intent=self.intent).count(), 1)

    def test_webhook_then_verify_single_transition(self):
        notified_at = self.now + timedelta(minutes=1)

        apply_webhook({'tx_ref': 'TXN-verify-1', 'status': 'success'}, now=notified_at)
        result = apply_verify('TXN-verify-1', gateway=self.gateway, now=notified_at + timedelta(seconds=5))

        self.assertEqual(result, Payment.Status.COMPLETED)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.paid_at, notified_at)
        self.assertEqual(Reservation.objects.filter(intent=self.intent).count(), 1)

    def test_unknown_reference_raises_without_gateway_call(self):
        with self.assertRaises(Payment.DoesNotExist):
            apply_verify('TXN-missing', gateway=self.gateway)
        self.gateway.verify.assert_not_called()

    def test_gateway_down_leaves_state_unchanged(self):
        self.gateway.verify.side_effect = GatewayUnavailableError('Chapa API returned HTTP 503')

        with self.assertRaises(GatewayUnavailableError):
            apply_verify('TXN-verify-1', gateway=self.gateway)

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.PENDING)
        self.assertNotIn('verify_events', self.payment.meta)

    def test_no_room_left_rolls_back(self):
        self.make_reservation(room=self.room1)
        self.make_reservation(room=self.room2)

        with self.assertRaises(NoAvailabilityError):
            apply_verify('TXN-verify-1', gateway=self.gateway)

        self.payment.refresh_from_db()
        self.intent.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.PENDING)
        self.assertEqual(self.intent.status, ReservationIntent.Status.PENDING)
        self.assertEqual(len(self.payment.meta['verify_events']), 1)
        self.assertIn('error', self.payment.meta['verify_events'][0])
        self.assertFalse(AuditLog.objects.filter(action='payment.completed').exists())


class RefundTestCase(HotelFixtureMixin, TestCase):
    """Refunds are only allowed within the refund window after completion"""

    def setUp(self):
        self.make_fixtures()
        self.reservation = self.make_reservation(payment_status=Reservation.PaymentStatus.PAID)
        self.paid_at = self.now - timedelta(days=1)
        self.gateway = Mock(spec=ChapaClient)
        self.gateway.refund.return_value = VerifyResult('TXN', 'refunded', {})

    def completed_payment(self, tx_ref, **owner):
        owner = owner or {'reservation': self.reservation}
        payment = self.make_payment(tx_ref, status=Payment.Status.COMPLETED, **owner)
        payment.paid_at = self.paid_at
        payment.save()
        return payment

    def test_refund_window_boundaries(self):
        scenarios = [
            {'elapsed': timedelta(hours=23, minutes=59), 'allowed': True},
            {'elapsed': timedelta(hours=24), 'allowed': True},
            {'elapsed': timedelta(hours=24, seconds=1), 'allowed': False},
        ]
        for index, scenario in enumerate(scenarios):
            with self.subTest(elapsed=scenario['elapsed']):
                payment = self.completed_payment(f'TXN-window-{index}')
                now = self.paid_at + scenario['elapsed']
                if scenario['allowed']:
                    apply_refund(payment.id, 'Guest cancelled', gateway=self.gateway, now=now)
                    payment.refresh_from_db()
                    self.assertEqual(payment.status, Payment.Status.REFUNDED)
                else:
                    with self.assertRaises(RefundWindowExpiredError):
                        apply_refund(payment.id, 'Guest cancelled', gateway=self.gateway, now=now)
                    payment.refresh_from_db()
                    self.assertEqual(payment.status, Payment.Status.COMPLETED)

    def test_only_completed_payments_refundable(self):
        for index, payment_status in enumerate((Payment.Status.PENDING, Payment.Status.FAILED, Payment.Status.REFUNDED)):
            with self.subTest(status=payment_status):
                payment = self.make_payment(f'TXN-open-{index}', status=payment_status, reservation=self.reservation)
                with self.assertRaises(PaymentNotCompletedError):
                    apply_refund(payment.id, 'Guest cancelled', gateway=self.gateway)
        self.gateway.refund.assert_not_called()

    def test_missing_completion_time_blocks_refund(self):
        payment = self.make_payment('TXN-no-paid-at', status=Payment.Status.COMPLETED, reservation=self.reservation)

        with self.assertRaises(RefundWindowExpiredError):
            apply_refund(payment.id, 'Guest cancelled', gateway=self.gateway)

    def test_refund_marks_reservation_refunded(self):
        payment = self.completed_payment('TXN-refund-1')
        now = self.paid_at + timedelta(hours=2)

        apply_refund(payment.id, 'Duplicate booking', gateway=self.gateway, now=now)

        self.gateway.refund.assert_called_once_with('TXN-refund-1', 'Duplicate booking')
        payment.refresh_from_db()
        self.reservation.refresh_from_db()
        self.assertEqual(payment.meta['refund_reason'], 'Duplicate booking')
        self.assertEqual(payment.meta['refunded_at'], now.isoformat())
        self.assertEqual(self.reservation.payment_status, Reservation.PaymentStatus.REFUNDED)
        self.assertTrue(AuditLog.objects.filter(action='payment.refunded', entity_id=str(payment.id)).exists())

    def test_refund_of_intent_payment_fails_intent(self):
        intent = self.make_intent(start_in=10)
        payment = self.make_payment('TXN-refund-2', intent=intent)
        apply_webhook({'tx_ref': 'TXN-refund-2', 'status': 'success'}, now=self.paid_at)

        apply_refund(payment.id, 'Guest cancelled', gateway=self.gateway, now=self.paid_at + timedelta(hours=1))

        intent.refresh_from_db()
        reservation = Reservation.objects.get(intent=intent)
        self.assertEqual(intent.status, ReservationIntent.Status.FAILED)
        self.assertEqual(reservation.payment_status, Reservation.PaymentStatus.REFUNDED)
        self.assertEqual(reservation.calculate_payment_status(), Reservation.PaymentStatus.REFUNDED)

    def test_gateway_failure_keeps_payment_completed(self):
        payment = self.completed_payment('TXN-refund-3')
        self.gateway.refund.side_effect = GatewayUnavailableError('Chapa API returned HTTP 500')

        with self.assertRaises(GatewayUnavailableError):
            apply_refund(payment.id, 'Guest cancelled', gateway=self.gateway, now=self.paid_at + timedelta(hours=1))

        payment.refresh_from_db()
        self.reservation.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.COMPLETED)
        self.assertEqual(self.reservation.payment_status, Reservation.PaymentStatus.PAID)


class PaymentStatusCalculationTestCase(HotelFixtureMixin, TestCase):

    def setUp(self):
        self.make_fixtures()

    def test_payment_status_derivation(self):
        scenarios = [
            {'payments': [], 'expected': Reservation.PaymentStatus.PENDING, 'description': 'no payments'},
            {'payments': [('1000.00', Payment.Status.COMPLETED)], 'expected': Reservation.PaymentStatus.PENDING,
             'description': 'partial'},
            {'payments': [('1000.00', Payment.Status.COMPLETED), ('2000.00', Payment.Status.PAID)],
             'expected': Reservation.PaymentStatus.PAID, 'description': 'covered by two payments'},
            {'payments': [('3000.00', Payment.Status.FAILED), ('3000.00', Payment.Status.FAILED)],
             'expected': Reservation.PaymentStatus.FAILED, 'description': 'all failed'},
            {'payments': [('3000.00', Payment.Status.FAILED), ('3000.00', Payment.Status.PENDING)],
             'expected': Reservation.PaymentStatus.PENDING, 'description': 'retry in flight'},
            {'payments': [('3000.00', Payment.Status.REFUNDED)], 'expected': Reservation.PaymentStatus.REFUNDED,
             'description': 'refunded'},
        ]
        for index, scenario in enumerate(scenarios):
            with self.subTest(scenario=scenario['description']):
                reservation = self.make_reservation(start_in=10 + index * 5)
                for n, (amount, payment_status) in enumerate(scenario['payments']):
                    Payment.objects.create(
                        reservation=reservation, amount=Decimal(amount), status=payment_status,
                        transaction_reference=f'TXN-calc-{index}-{n}',
                    )
                self.assertEqual(reservation.calculate_payment_status(), scenario['expected'])

    def test_recompute_is_idempotent(self):
        reservation = self.make_reservation()
        self.make_payment('TXN-calc-idem', status=Payment.Status.COMPLETED, reservation=reservation)

        first = reservation.calculate_payment_status()
        reservation.refresh_from_db()
        updated_at = reservation.updated_at
        second = reservation.calculate_payment_status()
        reservation.refresh_from_db()

        self.assertEqual(first, second)
        self.assertEqual(reservation.payment_status, Reservation.PaymentStatus.PAID)
        self.assertEqual(reservation.updated_at, updated_at)

    def test_intent_payments_count_towards_reservation(self):
        intent = self.make_intent()
        self.make_payment('TXN-calc-intent', status=Payment.Status.COMPLETED, intent=intent)
        reservation = self.make_reservation(intent=intent)

        self.assertEqual(reservation.calculate_payment_status(persist=False), Reservation.PaymentStatus.PAID)
        reservation.refresh_from_db()
        self.assertEqual(reservation.payment_status, Reservation.PaymentStatus.PENDING)


class ChapaClientTestCase(SimpleTestCase):
    """HTTP failures surface as GatewayUnavailableError"""

    def make_client(self, response=None, error=None):
        session = Mock()
        session.headers = {}
        if error is not None:
            session.request.side_effect = error
        else:
            session.request.return_value = response
        return ChapaClient('CHASECK_TEST-secret', session=session), session

    def make_response(self, ok=True, status_code=200, body=None):
        response = Mock(ok=ok, status_code=status_code)
        response.json.return_value = body if body is not None else {}
        return response

    def test_missing_secret_key(self):
        with self.assertRaises(ImproperlyConfigured):
            ChapaClient('')

    def test_initialize_returns_checkout_url(self):
        body = {'status': 'success', 'data': {'checkout_url': 'https://checkout.chapa.co/checkout/payment/x'}}
        client, session = self.make_client(self.make_response(body=body))

        result = client.initialize('TXN-1', Decimal('3000.00'), 'ETB', {'name': 'Abebe', 'email': 'a@example.com'},
                                   CALLBACK_URL, RETURN_URL)

        self.assertEqual(result.checkout_url, 'https://checkout.chapa.co/checkout/payment/x')
        self.assertEqual(session.headers['Authorization'], 'Bearer CHASECK_TEST-secret')
        method, url = session.request.call_args[0]
        self.assertEqual((method, url), ('POST', 'https://api.chapa.co/v1/transaction/initialize'))
        self.assertEqual(session.request.call_args[1]['json']['amount'], '3000.00')

    def test_failures_raise_gateway_error(self):
        scenarios = {
            'network error': {'error': requests.ConnectionError('connection refused')},
            'timeout': {'error': requests.Timeout('read timed out')},
            'http 500': {'response': self.make_response(ok=False, status_code=500, body={'message': 'Server error'})},
            'missing checkout url': {'response': self.make_response(body={'status': 'success', 'data': {}})},
        }
        for description, scenario in scenarios.items():
            with self.subTest(scenario=description):
                client, _ = self.make_client(**scenario)
                with self.assertRaises(GatewayUnavailableError):
                    client.initialize('TXN-1', Decimal('10.00'), 'ETB', {}, CALLBACK_URL, RETURN_URL)

    def test_verify_reads_status(self):
        body = {'status': 'success', 'data': {'status': 'success', 'amount': '10.00'}}
        client, session = self.make_client(self.make_response(body=body))

        result = client.verify('TXN-1')

        self.assertEqual(result.gateway_status, 'success')
        self.assertEqual(result.raw, body)
        self.assertEqual(session.request.call_args[0], ('GET', 'https://api.chapa.co/v1/transaction/verify/TXN-1'))

    def test_verify_tolerates_malformed_data(self):
        for data in ('oops', ['success'], None):
            with self.subTest(data=data):
                client, _ = self.make_client(self.make_response(body={'status': 'success', 'data': data}))
                self.assertEqual(client.verify('TXN-1').gateway_status, 'unknown')


class ReservationApiTestCase(HotelFixtureMixin, APITestCase):
    """HTTP surface of the booking flow"""

    def setUp(self):
        self.make_fixtures()
        self.client.force_authenticate(user=self.user)

    def test_create_intent_returns_checkout(self):
        check_in = self.today + timedelta(days=1)
        data = {
            'hotel_id': self.hotel.id,
            'room_type': 'Standard',
            'check_in': check_in.isoformat(),
            'check_out': (check_in + timedelta(days=2)).isoformat(),
            'guests': 2,
        }

        with patch('reservations.intents.get_gateway', return_value=make_gateway()):
            response = self.client.post('/api/intents/', data, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        payment = Payment.objects.get(transaction_reference=response.data['data']['tx_ref'])
        self.assertEqual(payment.status, Payment.Status.PENDING)
        self.assertEqual(payment.intent_id, response.data['data']['intent_id'])
        self.assertIn('checkout.chapa.co', response.data['data']['checkout_url'])

    def test_create_intent_gateway_down(self):
        gateway = make_gateway()
        gateway.initialize.side_effect = GatewayUnavailableError('Failed to communicate with Chapa API')
        check_in = self.today + timedelta(days=1)
        data = {
            'hotel_id': self.hotel.id,
            'room_type': 'Standard',
            'check_in': check_in.isoformat(),
            'check_out': (check_in + timedelta(days=1)).isoformat(),
            'guests': 1,
        }

        with patch('reservations.intents.get_gateway', return_value=gateway):
            response = self.client.post('/api/intents/', data, format='json')

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
        intent = ReservationIntent.objects.get(pk=response.data['intent_id'])
        self.assertEqual(intent.payments.get().status, Payment.Status.INITIATED)

    def test_create_intent_without_rooms(self):
        check_in = self.today + timedelta(days=1)
        data = {
            'hotel_id': self.hotel.id,
            'room_type': 'Penthouse',
            'check_in': check_in.isoformat(),
            'check_out': (check_in + timedelta(days=1)).isoformat(),
            'guests': 1,
        }

        response = self.client.post('/api/intents/', data, format='json')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_webhook_always_acknowledged(self):
        self.client.force_authenticate(user=None)
        intent = self.make_intent()
        self.make_payment('TXN-api-1', intent=intent)
        bodies = [
            ('not json at all', 'text/plain'),
            ('{"tx_ref": "TXN-unknown", "status": "success"}', 'application/json'),
            ('{"status": "success"}', 'application/json'),
            ('{"tx_ref": "TXN-api-1", "status": "success"}', 'application/json'),
        ]
        for body, content_type in bodies:
            with self.subTest(body=body):
                response = self.client.post('/api/webhooks/chapa/', body, content_type=content_type)
                self.assertEqual(response.status_code, status.HTTP_200_OK)

        intent.refresh_from_db()
        self.assertEqual(intent.status, ReservationIntent.Status.CONFIRMED)

    def test_webhook_with_malformed_fields_acknowledged(self):
        """Odd status or amount values never turn into a server error"""
        self.client.force_authenticate(user=None)
        intent = self.make_intent()
        payment = self.make_payment('TXN-api-5', intent=intent)
        payloads = [
            {'tx_ref': 'TXN-api-5', 'status': 1},
            {'tx_ref': 'TXN-api-5', 'status': ['success']},
            {'tx_ref': 'TXN-api-5', 'status': {'value': 'success'}},
            {'tx_ref': ['TXN-api-5'], 'status': 'success'},
            {'tx_ref': 'TXN-api-5', 'status': 'success', 'amount': 'NaN'},
            {'tx_ref': 'TXN-api-5', 'status': 'success', 'amount': 'Infinity'},
        ]
        for payload in payloads:
            with self.subTest(payload=payload):
                response = self.client.post('/api/webhooks/chapa/', payload, format='json')
                self.assertEqual(response.status_code, status.HTTP_200_OK)

        payment.refresh_from_db()
        intent.refresh_from_db()
        # non-string statuses left it pending; the unreadable amount failed it
        self.assertEqual(payment.status, Payment.Status.FAILED)
        self.assertIn('Unreadable amount', payment.meta['mismatch'])
        self.assertEqual(intent.status, ReservationIntent.Status.FAILED)
        self.assertEqual(len(payment.meta['webhook_events']), 5)

    def test_payment_status_scoped_to_owner(self):
        intent = self.make_intent()
        self.make_payment('TXN-api-2', intent=intent)

        response = self.client.get('/api/payments/status/', {'tx_ref': 'TXN-api-2'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['payment_status'], Payment.Status.PENDING)
        self.assertEqual(response.data['data']['intent_status'], ReservationIntent.Status.PENDING)
        self.assertIsNone(response.data['data']['reservation_id'])

        self.client.force_authenticate(user=make_user('intruder'))
        response = self.client.get('/api/payments/status/', {'tx_ref': 'TXN-api-2'})
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_verify_endpoint(self):
        intent = self.make_intent()
        self.make_payment('TXN-api-3', intent=intent)
        gateway = Mock(spec=ChapaClient)
        gateway.verify.return_value = verify_result('TXN-api-3', 'success')

        with patch('reservations.payments.get_gateway', return_value=gateway):
            response = self.client.post('/api/payments/verify/', {'tx_ref': 'TXN-api-3'}, format='json')
            missing = self.client.post('/api/payments/verify/', {'tx_ref': 'TXN-missing'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['status'], Payment.Status.COMPLETED)
        self.assertEqual(missing.status_code, status.HTTP_404_NOT_FOUND)

    def test_refund_of_pending_payment_rejected(self):
        intent = self.make_intent()
        payment = self.make_payment('TXN-api-4', intent=intent)

        response = self.client.post(f'/api/payments/{payment.id}/refund/', {'reason': 'Changed plans'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)
        self.assertEqual(str(response.data['detail']), PaymentNotCompletedError.default_detail)

    def test_initiate_payment_for_paid_reservation_rejected(self):
        reservation = self.make_reservation(payment_status=Reservation.PaymentStatus.PAID)

        response = self.client.post(f'/api/reservations/{reservation.id}/initiate_payment/', {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)
        self.assertFalse(Payment.objects.exists())

    def test_clients_only_see_their_reservations(self):
        mine = self.make_reservation(room=self.room1)
        self.make_reservation(room=self.room2, user=make_user('someone'))

        response = self.client.get('/api/reservations/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([r['id'] for r in response.data], [mine.id])

    def test_staff_moves_reservation_through_lifecycle(self):
        reservation = self.make_reservation(status=Reservation.Status.PENDING)
        url = f'/api/reservations/{reservation.id}/confirm/'

        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        receptionist = make_user('reception', role=UserProfile.Role.RECEPTIONIST, hotel=self.hotel)
        self.client.force_authenticate(user=receptionist)

        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], Reservation.Status.CONFIRMED)

        response = self.client.post(f'/api/reservations/{reservation.id}/check_out/')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertTrue(AuditLog.objects.filter(action='reservation.confirmed', user=receptionist).exists())

    def test_calendar_endpoints(self):
        self.client.force_authenticate(user=None)
        base = f'/api/hotels/{self.hotel.id}/availability/'

        response = self.client.get(f'{base}check-in-dates/', {
            'room_type': 'Penthouse', 'start': self.today.isoformat(), 'days': 3,
        })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['data']), 3)

        response = self.client.get(f'{base}check-out-dates/', {
            'room_type': 'Standard', 'check_in': self.today.isoformat(), 'days': 3,
        })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data'], [])

        response = self.client.get(f'{base}check-in-dates/', {
            'room_type': 'Standard', 'start': self.today.isoformat(), 'days': 5000,
        })
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.get(base, {
            'start': self.today.isoformat(), 'end': (self.today + timedelta(days=1)).isoformat(),
        })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data'][0]['days'][0]['rooms_available'], 2)


class InterleavedSettlementTestCase(HotelFixtureMixin, TransactionTestCase):
    """Webhook and verify landing while the other one waits on the gateway"""

    def setUp(self):
        self.make_fixtures()
        self.intent = self.make_intent()
        self.payment = self.make_payment('TXN-race-2', intent=self.intent)

    def assert_settled_once(self, paid_at):
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.COMPLETED)
        self.assertEqual(self.payment.paid_at, paid_at)
        self.assertEqual(len(self.payment.meta['webhook_events']), 1)
        self.assertEqual(len(self.payment.meta['verify_events']), 1)
        self.assertEqual(AuditLog.objects.filter(action='payment.completed').count(), 1)

        reservation = Reservation.objects.get(intent=self.intent)
        self.assertEqual(reservation.payment_status, Reservation.PaymentStatus.PAID)
        self.assertEqual(reservation.calculate_payment_status(persist=False), Reservation.PaymentStatus.PAID)

    def test_webhook_lands_during_verify(self):
        """Verify read a pending payment, then the webhook committed first"""
        webhook_at = self.now + timedelta(seconds=1)

        def verify_after_webhook(tx_ref):
            apply_webhook({'tx_ref': tx_ref, 'status': 'success'}, now=webhook_at)
            return verify_result(tx_ref, 'success')

        gateway = Mock(spec=ChapaClient)
        gateway.verify.side_effect = verify_after_webhook

        result = apply_verify('TXN-race-2', gateway=gateway, now=self.now + timedelta(seconds=2))

        self.assertEqual(result, Payment.Status.COMPLETED)
        self.assert_settled_once(webhook_at)

    @override_settings(CHAPA_WEBHOOK_VERIFY_WITH_GATEWAY=True)
    def test_verify_lands_during_webhook(self):
        """The webhook's gateway check is in flight while a client poll settles the payment"""
        verified_at = self.now + timedelta(seconds=1)
        poller = Mock(spec=ChapaClient)
        poller.verify.return_value = verify_result('TXN-race-2', 'success')

        def check_after_poll(tx_ref):
            apply_verify(tx_ref, gateway=poller, now=verified_at)
            return verify_result(tx_ref, 'success')

        webhook_gateway = Mock(spec=ChapaClient)
        webhook_gateway.verify.side_effect = check_after_poll

        result = apply_webhook(
            {'tx_ref': 'TXN-race-2', 'status': 'success'}, gateway=webhook_gateway,
            now=self.now + timedelta(seconds=2),
        )

        self.assertFalse(result.changed)
        self.assert_settled_once(verified_at)


@skipUnless(connection.vendor == 'postgresql', 'row locks need PostgreSQL')
class ConcurrentSettlementTestCase(HotelFixtureMixin, TransactionTestCase):
    """Webhook and verify racing on the same payment"""

    def setUp(self):
        self.make_fixtures()
        self.intent = self.make_intent()
        self.payment = self.make_payment('TXN-race-1', intent=self.intent)
        self.gateway = Mock(spec=ChapaClient)
        self.gateway.verify.return_value = verify_result('TXN-race-1', 'success')

    def test_concurrent_webhook_and_verify(self):
        """Only one caller performs the transition"""

        def run(call):
            try:
                return call()
            finally:
                connection.close()

        calls = [
            lambda: apply_webhook({'tx_ref': 'TXN-race-1', 'status': 'success'}),
            lambda: apply_verify('TXN-race-1', gateway=self.gateway),
            lambda: apply_webhook({'tx_ref': 'TXN-race-1', 'status': 'success'}),
            lambda: apply_verify('TXN-race-1', gateway=self.gateway),
        ]
        with ThreadPoolExecutor(max_workers=len(calls)) as executor:
            futures = [executor.submit(run, call) for call in calls]
            for future in as_completed(futures):
                future.result()

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.COMPLETED)
        events = self.payment.meta['webhook_events'] + self.payment.meta['verify_events']
        self.assertEqual(len(events), 4)
        self.assertEqual(Reservation.objects.filter(intent=self.intent).count(), 1)
        self.assertEqual(AuditLog.objects.filter(action='payment.completed').count(), 1)
