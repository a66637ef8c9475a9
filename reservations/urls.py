from django.urls import path
from rest_framework.routers import DefaultRouter

from reservations.views import (
    ChapaWebhookView,
    PaymentViewSet,
    ReservationIntentViewSet,
    ReservationViewSet,
    RoomViewSet,
    disabled_check_in_dates,
    disabled_check_out_dates,
    hotel_availability,
)

router = DefaultRouter()
router.register(r'rooms', RoomViewSet)
router.register(r'intents', ReservationIntentViewSet, basename='intent')
router.register(r'reservations', ReservationViewSet, basename='reservation')
router.register(r'payments', PaymentViewSet, basename='payment')

urlpatterns = [
    path('hotels/<int:hotel_id>/availability/', hotel_availability, name='hotel-availability'),
    path('hotels/<int:hotel_id>/availability/check-in-dates/', disabled_check_in_dates, name='check-in-dates'),
    path('hotels/<int:hotel_id>/availability/check-out-dates/', disabled_check_out_dates, name='check-out-dates'),
    path('webhooks/chapa/', ChapaWebhookView.as_view(), name='chapa-webhook'),
] + router.urls
