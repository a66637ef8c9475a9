from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q, Sum


class Hotel(models.Model):
    name = models.CharField(max_length=150)
    city = models.CharField(max_length=100, blank=True)
    country = models.CharField(max_length=100, blank=True)
    phone = models.CharField(max_length=20, unique=True)
    email = models.EmailField(blank=True)
    timezone = models.CharField(max_length=64, default="Africa/Addis_Ababa")
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.name


class UserProfile(models.Model):
    class Role(models.TextChoices):
        SUPERADMIN = "superadmin"
        ADMIN = "admin"
        MANAGER = "manager"
        RECEPTIONIST = "receptionist"
        CLIENT = "client"

    STAFF_ROLES = (Role.SUPERADMIN, Role.ADMIN, Role.MANAGER, Role.RECEPTIONIST)

    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="profile")
    role = models.CharField(max_length=20, choices=Role.choices, default=Role.CLIENT)
    phone_number = models.CharField(max_length=16, blank=True)  # E.164
    hotel = models.ForeignKey(Hotel, on_delete=models.SET_NULL, null=True, blank=True, related_name="staff")

    @property
    def is_staff_role(self):
        return self.role in self.STAFF_ROLES


class Room(models.Model):
    class Status(models.TextChoices):
        AVAILABLE = "available"
        UNAVAILABLE = "unavailable"
        OCCUPIED = "occupied"
        MAINTENANCE = "maintenance"

    hotel = models.ForeignKey(Hotel, on_delete=models.CASCADE, related_name="rooms")
    number = models.CharField(max_length=20)
    type = models.CharField(max_length=50)
    price = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(0)])
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.AVAILABLE)
    capacity = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    description = models.TextField(blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["hotel", "number"], name="uq_room_number_per_hotel"),
            models.CheckConstraint(condition=Q(capacity__gte=1), name="ck_room_capacity_positive"),
        ]
        indexes = [models.Index(fields=["hotel", "type", "status"], name="room_hotel_type_status_idx")]

    def __str__(self):
        return f"{self.hotel_id}/{self.number} ({self.type})"


class ReservationIntent(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        FAILED = "failed"
        EXPIRED = "expired"

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="reservation_intents")
    hotel = models.ForeignKey(Hotel, on_delete=models.CASCADE, related_name="reservation_intents")
    room_type = models.CharField(max_length=50)
    check_in = models.DateField()
    check_out = models.DateField()
    nights = models.PositiveIntegerField()
    guests = models.PositiveIntegerField(default=1)
    total_amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="ETB")
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.PENDING)
    expires_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["hotel", "status"], name="intent_hotel_status_idx"),
            models.Index(fields=["user", "status"], name="intent_user_status_idx"),
        ]

    def is_expired(self, now):
        return now >= self.expires_at


class Reservation(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        CHECKED_IN = "checked_in"
        CHECKED_OUT = "checked_out"
        CANCELLED = "cancelled"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending"
        PAID = "paid"
        FAILED = "failed"
        REFUNDED = "refunded"

    # Reservations in these states hold their room
    ACTIVE_STATUSES = (Status.PENDING, Status.CONFIRMED, Status.CHECKED_IN)

    TRANSITIONS = {
        Status.PENDING: {Status.CONFIRMED, Status.CANCELLED},
        Status.CONFIRMED: {Status.CHECKED_IN, Status.CANCELLED},
        Status.CHECKED_IN: {Status.CHECKED_OUT},
    }

    room = models.ForeignKey(Room, on_delete=models.CASCADE, related_name="reservations")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="reservations")
    intent = models.OneToOneField(ReservationIntent, on_delete=models.SET_NULL, null=True, blank=True, related_name="reservation")
    guest_name = models.CharField(max_length=150, blank=True)
    guest_email = models.EmailField(blank=True)
    guest_phone = models.CharField(max_length=16, blank=True)
    check_in = models.DateField()
    check_out = models.DateField()
    guests = models.PositiveIntegerField(default=1)
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.PENDING)
    payment_status = models.CharField(max_length=10, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    total_amount = models.DecimalField(max_digits=10, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(condition=Q(check_out__gt=models.F("check_in")), name="ck_reservation_dates_ordered"),
        ]
        indexes = [models.Index(fields=["room", "status", "check_in", "check_out"], name="reservation_room_dates_idx")]

    def __str__(self):
        return f"Reservation {self.pk} room={self.room_id} {self.check_in}..{self.check_out}"

    def can_transition_to(self, status):
        return status in self.TRANSITIONS.get(self.status, set())

    def related_payments(self):
        """Payments owned by this reservation or by the intent it was created from."""
        owned = Q(reservation=self)
        if self.intent_id:
            owned |= Q(intent_id=self.intent_id)
        return Payment.objects.filter(owned)

    def calculate_payment_status(self, persist=True):
        """
        Derive payment_status from the attached payments.

        paid:      settled payments cover total_amount
        refunded:  not covered and at least one payment was refunded
        failed:    every attached payment failed
        pending:   anything else (no payments, in-flight or partial)
        """
        payments = self.related_payments()
        settled = payments.filter(status__in=Payment.SETTLED_STATUSES).aggregate(total=Sum("amount"))["total"]
        settled = settled or Decimal("0")
        statuses = set(payments.values_list("status", flat=True))

        # compare in cents
        total_cents = int(round(Decimal(self.total_amount or 0) * 100))
        settled_cents = int(round(settled * 100))

        if settled_cents > 0 and settled_cents >= total_cents:
            status = self.PaymentStatus.PAID
        elif Payment.Status.REFUNDED in statuses:
            status = self.PaymentStatus.REFUNDED
        elif statuses and statuses == {Payment.Status.FAILED}:
            status = self.PaymentStatus.FAILED
        else:
            status = self.PaymentStatus.PENDING

        if persist and self.payment_status != status:
            self.payment_status = status
            self.save(update_fields=["payment_status", "updated_at"])
        return status


@dataclass(frozen=True)
class ReservationOwner:
    reservation_id: int


@dataclass(frozen=True)
class IntentOwner:
    intent_id: int


class Payment(models.Model):
    class Method(models.TextChoices):
        CHAPA = "chapa"
        CASH = "cash"
        BANK_TRANSFER = "bank_transfer"
        STRIPE = "stripe"
        TELEBIRR = "telebirr"

    class Status(models.TextChoices):
        INITIATED = "initiated"
        PENDING = "pending"
        COMPLETED = "completed"
        PAID = "paid"
        FAILED = "failed"
        REFUNDED = "refunded"

    SETTLED_STATUSES = (Status.COMPLETED, Status.PAID)
    TERMINAL_STATUSES = (Status.COMPLETED, Status.PAID, Status.FAILED, Status.REFUNDED)

    reservation = models.ForeignKey(Reservation, on_delete=models.CASCADE, null=True, blank=True, related_name="payments")
    intent = models.ForeignKey(ReservationIntent, on_delete=models.CASCADE, null=True, blank=True, related_name="payments")
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="ETB")
    method = models.CharField(max_length=20, choices=Method.choices, default=Method.CHAPA)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.INITIATED)
    transaction_reference = models.CharField(max_length=100, unique=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    meta = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            # exactly one owner
            models.CheckConstraint(
                condition=(
                    Q(reservation__isnull=False, intent__isnull=True)
                    | Q(reservation__isnull=True, intent__isnull=False)
                ),
                name="ck_payment_single_owner",
            ),
        ]
        indexes = [
            models.Index(fields=["reservation", "status"], name="payment_reservation_status_idx"),
            models.Index(fields=["intent", "status"], name="payment_intent_status_idx"),
        ]

    def __str__(self):
        return f"{self.transaction_reference} [{self.status}]"

    @property
    def owner(self):
        if self.reservation_id is not None:
            return ReservationOwner(self.reservation_id)
        return IntentOwner(self.intent_id)

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_settled(self):
        return self.status in self.SETTLED_STATUSES

    def append_meta(self, key, entry):
        """Append entry to the history list stored under key."""
        meta = dict(self.meta or {})
        meta[key] = list(meta.get(key, [])) + [entry]
        self.meta = meta

    def merge_meta(self, **values):
        meta = dict(self.meta or {})
        meta.update(values)
        self.meta = meta


class AuditLog(models.Model):
    action = models.CharField(max_length=80)
    entity = models.CharField(max_length=80, blank=True)
    entity_id = models.CharField(max_length=80, blank=True)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    hotel = models.ForeignKey(Hotel, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    meta = models.JSONField(null=True, blank=True)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-timestamp"]
