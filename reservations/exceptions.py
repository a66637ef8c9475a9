from rest_framework import status
from rest_framework.exceptions import APIException


class NoAvailabilityError(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'No rooms available for the selected dates and room type'
    default_code = 'no_availability'


class IntentNotPendingError(APIException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = 'Reservation intent is not pending'
    default_code = 'intent_not_pending'


class ReservationAlreadyPaidError(APIException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = 'Reservation is already fully paid'
    default_code = 'reservation_already_paid'


class PaymentNotCompletedError(APIException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = 'Payment must be completed before it can be refunded'
    default_code = 'payment_not_completed'


class RefundWindowExpiredError(APIException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = 'Refund window has expired. Refunds are only available within 24 hours of payment completion.'
    default_code = 'refund_window_expired'


class GatewayUnavailableError(APIException):
    """Transport failure or non-2xx answer from the payment gateway."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = 'Payment gateway is unavailable'
    default_code = 'gateway_unavailable'

    def __init__(self, detail=None, response=None):
        super().__init__(detail)
        self.response = response or {}
