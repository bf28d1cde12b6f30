from datetime import date, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from errors import BackendWriteError, InsufficientCapacityError, ValidationError
from matching import RideMatcher, find_matches
from models import (
    AddressRecord,
    BookingStatus,
    Coordinates,
    NotificationKind,
    RideStatus,
    RouteResult,
)
from tests.fakes import ROUTE

SEARCH_SOURCE = Coordinates(lat=12.951, lng=77.601)
SEARCH_DESTINATION = Coordinates(lat=12.901, lng=77.651)
NEXT_WEEK = (datetime.now() + timedelta(days=7)).replace(hour=9, minute=0, second=0, microsecond=0)


def _address(lat, lng, label="Koramangala, Bengaluru"):
    return AddressRecord(
        location=Coordinates(lat=lat, lng=lng),
        formatted_label=label,
        primary_label=label.split(",")[0],
    )


# ---------- search ----------


@pytest.mark.parametrize(
    "source,destination",
    [(None, SEARCH_DESTINATION), (SEARCH_SOURCE, None), ({"lat": "x", "lng": 77.6}, SEARCH_DESTINATION)],
)
def test_search_requires_coordinates_before_backend_call(matcher, supabase, source, destination):
    with pytest.raises(ValidationError):
        matcher.search(source, destination)
    assert supabase.calls == []


def test_search_returns_nearby_ride_and_route(matcher, make_ride, router):
    ride = make_ride()

    result = matcher.search(SEARCH_SOURCE, SEARCH_DESTINATION, date(2025, 6, 1))

    assert result.rides == [ride]
    match = result.matches[0]
    assert match.source_distance < 2000
    assert match.destination_distance < 2000
    assert result.route == ROUTE
    assert len(router.calls) == 1


def test_search_without_matches_skips_route(matcher, make_ride, router):
    make_ride(source=(12.99, 77.70))

    result = matcher.search(SEARCH_SOURCE, SEARCH_DESTINATION)

    assert result.matches == []
    assert result.route.is_empty
    assert router.calls == []


def test_search_date_filter(matcher, make_ride):
    make_ride(date_time=datetime(2025, 6, 2, 23, 59))
    included = make_ride(date_time=datetime(2025, 6, 1, 0, 0, 1))

    result = matcher.search(SEARCH_SOURCE, SEARCH_DESTINATION, date(2025, 6, 1))

    assert result.rides == [included]


def test_search_skips_rides_missing_coordinates(matcher, make_ride):
    make_ride(source=None)
    make_ride(destination=None)
    complete = make_ride()

    assert matcher.search(SEARCH_SOURCE, SEARCH_DESTINATION).rides == [complete]


def test_search_ignores_inactive_rides(matcher, make_ride, repository):
    ride = make_ride()
    repository.update_ride_status(ride.id, RideStatus.COMPLETED)

    assert matcher.search(SEARCH_SOURCE, SEARCH_DESTINATION).matches == []


def test_search_route_failure_keeps_matches(repository, notifier, make_ride):
    def broken_router(origin, destination):
        raise RuntimeError("boom")

    make_ride()
    matcher = RideMatcher(repository, notifier, router=broken_router)

    result = matcher.search(SEARCH_SOURCE, SEARCH_DESTINATION)

    assert len(result.matches) == 1
    assert result.route == RouteResult()


def test_search_orders_by_combined_distance(matcher, make_ride):
    farther = make_ride(source=(12.96, 77.60))
    nearest = make_ride(source=(12.951, 77.601), destination=(12.901, 77.651))
    middle = make_ride()

    assert matcher.search(SEARCH_SOURCE, SEARCH_DESTINATION).rides == [nearest, middle, farther]


@pytest.mark.parametrize(
    "distances,expected",
    [
        ((2000.0, 2000.0), 1),
        ((2000.01, 2000.0), 0),
        ((2000.0, 2000.01), 0),
        ((0.0, 1999.99), 1),
    ],
)
def test_threshold_is_inclusive(make_ride, distances, expected):
    ride = make_ride()
    with patch("matching.haversine_m", side_effect=list(distances)):
        matches = find_matches([ride], SEARCH_SOURCE, SEARCH_DESTINATION)
    assert len(matches) == expected


# ---------- booking ----------


def test_end_to_end_search_and_book(matcher, make_ride, repository, passenger):
    ride = make_ride(seats=3)

    found = matcher.search(SEARCH_SOURCE, SEARCH_DESTINATION, date(2025, 6, 1)).rides
    assert [r.id for r in found] == [ride.id]

    booking = matcher.book_ride(found[0], 2, passenger)
    assert booking.seats == 2
    assert booking.status == BookingStatus.ACTIVE
    assert booking.source == ride.source and booking.destination == ride.destination
    assert booking.date_time == ride.date_time

    refreshed = matcher.search(SEARCH_SOURCE, SEARCH_DESTINATION, date(2025, 6, 1)).rides[0]
    assert refreshed.seats == 1
    assert refreshed.status == RideStatus.ACTIVE

    with pytest.raises(InsufficientCapacityError):
        matcher.book_ride(refreshed, 2, passenger)
    assert repository.get_ride(ride.id).seats == 1


def test_overbooking_writes_nothing(matcher, make_ride, supabase, passenger):
    ride = make_ride(seats=2)
    supabase.calls.clear()

    with pytest.raises(InsufficientCapacityError) as context:
        matcher.book_ride(ride, 3, passenger)

    assert context.value.requested == 3
    assert context.value.available == 2
    assert supabase.writes() == []
    assert supabase.rows("bookings") == []


@pytest.mark.parametrize("seats", [0, -1, 1.5, True])
def test_booking_seat_count_validation(matcher, make_ride, passenger, seats):
    ride = make_ride()
    with pytest.raises(ValidationError):
        matcher.book_ride(ride, seats, passenger)


def test_booking_requires_passenger(matcher, make_ride):
    with pytest.raises(ValidationError):
        matcher.book_ride(make_ride(), 1, None)


def test_booking_lost_race_rereads_seats(matcher, make_ride, repository, passenger):
    ride = make_ride(seats=3)
    # another passenger books 2 seats after this one loaded the ride
    repository.update_ride_seats(ride.id, 1, expected_seats=3)

    with pytest.raises(InsufficientCapacityError):
        matcher.book_ride(ride, 2, passenger)
    assert repository.get_ride(ride.id).seats == 1

    booking = matcher.book_ride(ride, 1, passenger)
    assert booking.seats == 1
    assert repository.get_ride(ride.id).seats == 0


def test_booking_write_failure_restores_seats(matcher, make_ride, repository, supabase, passenger):
    ride = make_ride(seats=3)
    supabase.fail_next("bookings", "insert")

    with pytest.raises(BackendWriteError):
        matcher.book_ride(ride, 2, passenger)

    assert repository.get_ride(ride.id).seats == 3
    assert supabase.rows("bookings") == []


def test_booking_unexpected_failure_restores_seats(matcher, make_ride, repository, passenger):
    ride = make_ride(seats=3)

    with patch.object(repository, "create_booking", side_effect=RuntimeError("unreadable booking row")):
        with pytest.raises(RuntimeError):
            matcher.book_ride(ride, 2, passenger)

    assert repository.get_ride(ride.id).seats == 3


def test_booking_notifies_driver_with_profile_name(matcher, make_ride, repository, inbox, passenger, driver):
    repository.create_profile(driver.id, driver.email)
    repository.update_profile(driver.id, {"full_name": "Ravi"})
    ride = make_ride()

    matcher.book_ride(ride, 1, passenger)

    assert len(inbox) == 1
    notification = inbox[0]
    assert notification.kind == NotificationKind.BOOKING_CONFIRMATION
    assert notification.recipient_id == driver.id
    assert notification.data["driver_name"] == "Ravi"
    assert notification.data["seats"] == 1
    assert "Koramangala" in notification.body


def test_booking_driver_name_falls_back_to_email(matcher, make_ride, inbox, passenger, driver):
    matcher.book_ride(make_ride(), 1, passenger)
    assert inbox[0].data["driver_name"] == driver.email


def test_notification_failure_does_not_fail_booking(repository, make_ride, passenger, router):
    notifier = MagicMock()
    notifier.notify.side_effect = RuntimeError("push service down")
    matcher = RideMatcher(repository, notifier, router=router)
    ride = make_ride(seats=2)

    booking = matcher.book_ride(ride, 1, passenger)

    assert booking.id
    assert repository.get_ride(ride.id).seats == 1
    notifier.notify.assert_called_once()


def test_booking_cancelled_ride_rejected(matcher, make_ride, repository, passenger):
    ride = make_ride()
    cancelled = repository.update_ride_status(ride.id, RideStatus.CANCELLED)
    with pytest.raises(ValidationError):
        matcher.book_ride(cancelled, 1, passenger)


# ---------- cancellation ----------


def test_cancel_booking_restores_seats(matcher, make_ride, repository, passenger):
    ride = make_ride(seats=3)
    booking = matcher.book_ride(ride, 2, passenger)

    cancelled = matcher.cancel_booking(booking.id, passenger)

    assert cancelled.status == BookingStatus.CANCELLED
    assert repository.get_ride(ride.id).seats == 3


def test_cancel_booking_without_restore_policy(repository, notifier, router, make_ride, passenger):
    matcher = RideMatcher(repository, notifier, router=router, restore_seats_on_cancel=False)
    ride = make_ride(seats=3)
    booking = matcher.book_ride(ride, 2, passenger)

    matcher.cancel_booking(booking.id, passenger)

    assert repository.get_ride(ride.id).seats == 1


def test_restore_never_exceeds_published_seats(matcher, make_ride, repository, passenger):
    ride = make_ride(seats=3)
    booking = matcher.book_ride(ride, 2, passenger)
    # driver reset the seats by hand in the meantime
    repository.update_ride_seats(ride.id, 3)

    matcher.cancel_booking(booking.id, passenger)

    assert repository.get_ride(ride.id).seats == 3


def test_cancel_booking_twice_rejected(matcher, make_ride, repository, passenger):
    ride = make_ride(seats=3)
    booking = matcher.book_ride(ride, 1, passenger)
    matcher.cancel_booking(booking.id, passenger)

    with pytest.raises(ValidationError):
        matcher.cancel_booking(booking.id, passenger)
    assert repository.get_ride(ride.id).seats == 3


def test_cancel_booking_by_other_user_rejected(matcher, make_ride, passenger, driver):
    booking = matcher.book_ride(make_ride(), 1, passenger)
    with pytest.raises(ValidationError):
        matcher.cancel_booking(booking.id, driver)


def test_cancel_booking_on_cancelled_ride_keeps_seats(matcher, make_ride, repository, passenger, driver):
    ride = make_ride(seats=3)
    booking = matcher.book_ride(ride, 2, passenger)
    matcher.cancel_ride(ride.id, driver)

    matcher.cancel_booking(booking.id, passenger)

    assert repository.get_ride(ride.id).seats == 1


def test_cancel_ride_notifies_passengers(matcher, make_ride, passenger, driver, notifier):
    ride = make_ride()
    matcher.book_ride(ride, 1, passenger)
    received = []
    notifier.subscribe(received.append, recipient_id=passenger.id)

    cancelled = matcher.cancel_ride(ride.id, driver)

    assert cancelled.status == RideStatus.CANCELLED
    assert [n.kind for n in received] == [NotificationKind.RIDE_CANCELLATION]
    assert matcher.search(SEARCH_SOURCE, SEARCH_DESTINATION).matches == []


def test_cancel_ride_only_by_driver(matcher, make_ride, passenger):
    ride = make_ride()
    with pytest.raises(ValidationError):
        matcher.cancel_ride(ride.id, passenger)


# ---------- ride offers ----------


def test_offer_ride(matcher, driver, repository):
    ride = matcher.offer_ride(
        driver,
        _address(12.95, 77.60),
        _address(12.90, 77.65, "HSR Layout, Bengaluru"),
        NEXT_WEEK,
        3,
        150,
        "Swift",
        "ka01ab1234",
        recurring_days=["Friday", "monday"],
    )

    assert ride.status == RideStatus.ACTIVE
    assert ride.seats == ride.total_seats == 3
    assert ride.car_number == "KA01AB1234"
    assert ride.is_recurring
    assert ride.recurring_days == ["monday", "friday"]
    assert repository.get_ride(ride.id) == ride


@pytest.mark.parametrize(
    "overrides",
    [
        {"source": None},
        {"destination": _address(13.2, 77.60)},
        {"departure": None},
        {"departure": datetime.now() - timedelta(days=365)},
        {"seats": 0},
        {"price": -1},
        {"car_model": " "},
        {"car_number": ""},
        {"recurring_days": ["funday"]},
        {"driver": None},
    ],
)
def test_offer_ride_validation(matcher, driver, supabase, overrides):
    kwargs = dict(
        driver=driver,
        source=_address(12.95, 77.60),
        destination=_address(12.90, 77.65),
        departure=NEXT_WEEK,
        seats=3,
        price=100,
        car_model="Swift",
        car_number="KA01",
    )
    kwargs.update(overrides)
    with pytest.raises(ValidationError):
        matcher.offer_ride(**kwargs)
    assert supabase.writes() == []


def test_update_ride_notifies_passengers(matcher, make_ride, passenger, driver, notifier):
    ride = make_ride()
    matcher.book_ride(ride, 1, passenger)
    received = []
    notifier.subscribe(received.append, recipient_id=passenger.id)

    new_time = NEXT_WEEK.replace(hour=10, minute=30)
    updated = matcher.update_ride(ride.id, driver, {"date_time": new_time, "price": 90})

    assert updated.price == 90
    assert updated.date_time == new_time.astimezone()
    assert [n.kind for n in received] == [NotificationKind.RIDE_UPDATE]


def test_update_ride_rejects_protected_fields(matcher, make_ride, driver):
    ride = make_ride()
    with pytest.raises(ValidationError):
        matcher.update_ride(ride.id, driver, {"seats": 10})
    with pytest.raises(ValidationError):
        matcher.update_ride(ride.id, driver, {"price": -5})


@pytest.mark.parametrize(
    "changes",
    [
        {"source_location": {"lat": 40.7, "lng": -74.0}},
        {"destination_location": Coordinates(lat=13.2, lng=77.6)},
        {"source_location": None},
        {"date_time": datetime.now() - timedelta(days=1)},
    ],
)
def test_update_ride_rejects_out_of_area_or_past_changes(matcher, make_ride, repository, supabase, driver, changes):
    ride = make_ride()
    supabase.calls.clear()

    with pytest.raises(ValidationError):
        matcher.update_ride(ride.id, driver, changes)

    assert supabase.writes() == []
    assert repository.get_ride(ride.id) == ride


def test_update_ride_moves_within_service_area(matcher, make_ride, driver):
    ride = make_ride()

    updated = matcher.update_ride(ride.id, driver, {"source_location": {"lat": 12.97, "lng": 77.59}})

    assert updated.source_location == Coordinates(lat=12.97, lng=77.59)


@pytest.mark.parametrize("status", [RideStatus.CANCELLED, RideStatus.COMPLETED])
def test_update_ride_rejects_inactive_ride(
    matcher, make_ride, repository, supabase, passenger, driver, notifier, status
):
    ride = make_ride()
    matcher.book_ride(ride, 1, passenger)
    repository.update_ride_status(ride.id, status)
    received = []
    notifier.subscribe(received.append, recipient_id=passenger.id)
    supabase.calls.clear()

    with pytest.raises(ValidationError):
        matcher.update_ride(ride.id, driver, {"price": 10})

    assert supabase.writes() == []
    assert received == []
    assert repository.get_ride(ride.id).price == ride.price


# ---------- my rides ----------


def test_list_offered_and_booked_rides(matcher, make_ride, passenger, driver, supabase):
    first = make_ride(date_time=datetime(2025, 6, 1, 9, 0))
    second = make_ride(date_time=datetime(2025, 6, 3, 9, 0))
    matcher.book_ride(first, 1, passenger)
    orphan = matcher.book_ride(second, 1, passenger)
    supabase.tables["rides"] = [row for row in supabase.rows("rides") if row["id"] != second.id]

    assert [r.id for r in matcher.list_offered_rides(driver.id)] == [first.id]
    booked = matcher.list_booked_rides(passenger.id)
    assert [(b.ride_id, r.id) for b, r in booked] == [(first.id, first.id)]
    assert orphan.id not in [b.id for b, _ in booked]
