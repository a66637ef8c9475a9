from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from reservations.models import Hotel, Room, UserProfile


class Command(BaseCommand):
    help = 'Populate database with a sample hotel, rooms and a demo customer'

    def handle(self, *args, **options):
        hotel, _ = Hotel.objects.get_or_create(
            phone='+251111234567',
            defaults={
                'name': 'Blue Nile Hotel',
                'city': 'Addis Ababa',
                'country': 'Ethiopia',
                'email': 'frontdesk@bluenile.example',
            },
        )

        rooms_data = [
            {'number': '101', 'type': 'Standard', 'price': Decimal('1800.00'), 'capacity': 2,
             'description': 'Comfortable standard room with city view'},
            {'number': '102', 'type': 'Standard', 'price': Decimal('1900.00'), 'capacity': 2,
             'description': 'Standard room with balcony'},
            {'number': '201', 'type': 'Deluxe', 'price': Decimal('3200.00'), 'capacity': 3,
             'description': 'Spacious deluxe room'},
            {'number': '202', 'type': 'Deluxe', 'price': Decimal('3400.00'), 'capacity': 3,
             'description': 'Deluxe room with mini bar'},
            {'number': '301', 'type': 'Family Suite', 'price': Decimal('5200.00'), 'capacity': 4,
             'description': 'Large family suite with kitchenette'},
            {'number': '401', 'type': 'Presidential Suite', 'price': Decimal('9500.00'), 'capacity': 6,
             'description': 'Top floor suite', 'status': Room.Status.MAINTENANCE},
        ]

        for room_data in rooms_data:
            room, created = Room.objects.get_or_create(
                hotel=hotel,
                number=room_data['number'],
                defaults=room_data,
            )

            if created:
                self.stdout.write(f'Created room: {room.number} - {room.type}')
            else:
                self.stdout.write(f'Room {room.number} already exists')

        User = get_user_model()
        customer, created = User.objects.get_or_create(
            username='demo',
            defaults={'email': 'demo@example.com', 'first_name': 'Demo', 'last_name': 'Guest'},
        )
        if created:
            customer.set_password('demo-password')
            customer.save()
        UserProfile.objects.get_or_create(
            user=customer,
            defaults={'role': UserProfile.Role.CLIENT, 'phone_number': '+251912345678'},
        )

        self.stdout.write(
            self.style.SUCCESS('Successfully populated database with sample data')
        )
