from collections import defaultdict
from datetime import timedelta

from django.db.models import Exists, OuterRef

from .models import Reservation, Room


def overlaps(start, end, other_start, other_end):
    """Inclusive overlap: each interval starts on or before the day the other one ends."""
    return start <= other_end and end >= other_start


def active_reservations(check_in, check_out):
    """Active reservations overlapping [check_in, check_out] under the inclusive rule."""
    return Reservation.objects.filter(
        status__in=Reservation.ACTIVE_STATUSES,
        check_in__lte=check_out,
        check_out__gte=check_in,
    )


def bookable_rooms(hotel_id, room_type):
    return Room.objects.filter(hotel_id=hotel_id, type=room_type, status=Room.Status.AVAILABLE)


def available_rooms_qs(hotel_id, room_type, check_in, check_out):
    overlap = Exists(active_reservations(check_in, check_out).filter(room=OuterRef('pk')))
    return (
        bookable_rooms(hotel_id, room_type)
        .annotate(has_overlap=overlap)
        .filter(has_overlap=False)
        .order_by('id')
    )


def find_free_rooms(hotel_id, room_type, check_in, check_out):
    return list(available_rooms_qs(hotel_id, room_type, check_in, check_out).values_list('id', flat=True))


def _reservations_by_room(room_ids, window_start, window_end):
    rows = active_reservations(window_start, window_end).filter(room_id__in=room_ids)
    by_room = defaultdict(list)
    for room_id, check_in, check_out in rows.values_list('room_id', 'check_in', 'check_out'):
        by_room[room_id].append((check_in, check_out))
    return by_room


def _any_room_free(room_ids, by_room, start, end):
    for room_id in room_ids:
        if not any(overlaps(ci, co, start, end) for ci, co in by_room.get(room_id, ())):
            return True
    return False


def _date_range(start, days):
    return [start + timedelta(days=i) for i in range(days)]


def disabled_check_in_dates(hotel_id, room_type, start, days=90):
    """Check-in dates in [start, start + days) on which no room can take a 1-night stay."""
    room_ids = list(bookable_rooms(hotel_id, room_type).order_by('id').values_list('id', flat=True))
    if not room_ids:
        return _date_range(start, days)

    by_room = _reservations_by_room(room_ids, start, start + timedelta(days=days + 1))
    return [
        day for day in _date_range(start, days)
        if not _any_room_free(room_ids, by_room, day, day + timedelta(days=1))
    ]


def disabled_check_out_dates(hotel_id, room_type, check_in, days=90):
    """Check-out dates in (check_in, check_in + days] for which no room is free for the whole stay."""
    room_ids = list(bookable_rooms(hotel_id, room_type).order_by('id').values_list('id', flat=True))
    candidates = _date_range(check_in + timedelta(days=1), days)
    if not room_ids:
        return candidates

    by_room = _reservations_by_room(room_ids, check_in, check_in + timedelta(days=days))
    return [day for day in candidates if not _any_room_free(room_ids, by_room, check_in, day)]


def availability_by_type(hotel_id, start, end):
    """
    Per room type and per day in [start, end]: how many bookable rooms are not
    occupied that day, and the cheapest of them.

    A reservation occupies every day from its check-in through its check-out.
    """
    rooms = list(Room.objects.filter(hotel_id=hotel_id, status=Room.Status.AVAILABLE).order_by('type', 'id'))
    by_room = _reservations_by_room([r.id for r in rooms], start, end)
    days = _date_range(start, (end - start).days + 1)

    rooms_by_type = defaultdict(list)
    for room in rooms:
        rooms_by_type[room.type].append(room)

    result = []
    for room_type, type_rooms in rooms_by_type.items():
        type_days = []
        for day in days:
            free = [
                room for room in type_rooms
                if not any(ci <= day <= co for ci, co in by_room.get(room.id, ()))
            ]
            type_days.append({
                'date': day,
                'rooms_available': len(free),
                'price': min((room.price for room in free), default=0),
            })
        result.append({'type': room_type, 'days': type_days})
    return result
