from datetime import datetime

import pytest

from db import RideRepository
from matching import RideMatcher
from models import AuthUser, Coordinates, Ride
from notifications import NotificationCenter
from tests.fakes import ROUTE, FakeSupabase


@pytest.fixture
def supabase():
    return FakeSupabase()


@pytest.fixture
def repository(supabase):
    return RideRepository(supabase)


@pytest.fixture
def notifier():
    return NotificationCenter()


@pytest.fixture
def inbox(notifier):
    received = []
    unsubscribe = notifier.subscribe(received.append)
    yield received
    unsubscribe()


@pytest.fixture
def router():
    calls = []

    def route(origin, destination):
        calls.append((origin, destination))
        return ROUTE

    route.calls = calls
    return route


@pytest.fixture
def matcher(repository, notifier, router):
    return RideMatcher(repository, notifier, router=router)


@pytest.fixture
def driver():
    return AuthUser(id="driver-1", email="driver@example.com")


@pytest.fixture
def passenger():
    return AuthUser(id="passenger-1", email="passenger@example.com")


@pytest.fixture
def make_ride(repository, driver):
    def _make(
        source=(12.95, 77.60),
        destination=(12.90, 77.65),
        seats=3,
        date_time=datetime(2025, 6, 1, 9, 0),
        **extra,
    ):
        ride = Ride(
            driver_id=extra.pop("driver_id", driver.id),
            driver_email=extra.pop("driver_email", driver.email),
            source=extra.pop("source_label", "Koramangala"),
            source_location=Coordinates(lat=source[0], lng=source[1]) if source else None,
            destination=extra.pop("destination_label", "HSR Layout"),
            destination_location=Coordinates(lat=destination[0], lng=destination[1]) if destination else None,
            date_time=date_time,
            seats=seats,
            price=extra.pop("price", 120.0),
            car_model=extra.pop("car_model", "Swift"),
            car_number=extra.pop("car_number", "KA01AB1234"),
            **extra,
        )
        return repository.create_ride(ride)

    return _make
