"""
Ride search and booking.

A ride matches a search when both its pickup and its drop-off point lie within
PROXIMITY_THRESHOLD_METERS of the searcher's source and destination.
"""

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from config import MAX_SEAT_UPDATE_ATTEMPTS, PROXIMITY_THRESHOLD_METERS, WEEKDAYS
from db import RideRepository
from errors import (
    BackendError,
    BackendWriteError,
    InsufficientCapacityError,
    ValidationError,
)
from models import (
    AddressRecord,
    AuthUser,
    Booking,
    BookingStatus,
    Coordinates,
    NotificationKind,
    Ride,
    RideMatch,
    RideStatus,
    RouteResult,
    SearchResult,
)
from notifications import NotificationCenter
from routing import get_route
from utils import as_pair, haversine_m, is_within_bounds

logger = logging.getLogger(__name__)

# Fields a driver may change on a published ride
EDITABLE_RIDE_FIELDS = {
    "source",
    "source_location",
    "destination",
    "destination_location",
    "date_time",
    "price",
    "car_model",
    "car_number",
    "is_recurring",
    "recurring_days",
}


def _require_coordinates(point, name: str) -> Coordinates:
    pair = as_pair(point)
    if pair is None:
        raise ValidationError(f"Please select a valid {name} location")
    return Coordinates(lat=pair[0], lng=pair[1])


def _require_user(user: Optional[AuthUser], action: str) -> AuthUser:
    if user is None or not user.id:
        raise ValidationError(f"Please login to {action}")
    return user


def _require_in_area(location: Optional[Coordinates], label: str):
    if location is None or not is_within_bounds(location.lat, location.lng):
        raise ValidationError(f"{label} location must be within the service area")


def _require_future(departure: datetime):
    # naive values are local time
    if departure.astimezone() < datetime.now().astimezone():
        raise ValidationError("Departure time cannot be in the past")


def find_matches(rides: Iterable[Ride], source: Coordinates, destination: Coordinates) -> List[RideMatch]:
    """
    Keep the rides whose endpoints are both within the proximity threshold.

    Rides without both coordinates are skipped as malformed. Matches are
    ordered by combined distance, then ride id.
    """
    matches = []
    for ride in rides:
        if not ride.has_locations:
            logger.debug(f"Skipping ride {ride.id} without coordinates")
            continue
        source_distance = haversine_m(source.as_tuple(), ride.source_location.as_tuple())
        destination_distance = haversine_m(destination.as_tuple(), ride.destination_location.as_tuple())
        if source_distance <= PROXIMITY_THRESHOLD_METERS and destination_distance <= PROXIMITY_THRESHOLD_METERS:
            matches.append(
                RideMatch(
                    ride=ride,
                    source_distance=source_distance,
                    destination_distance=destination_distance,
                )
            )
    matches.sort(key=lambda m: (m.combined_distance, m.ride.id or ""))
    return matches


class RideMatcher:
    """
    Orchestrates search, booking and cancellation against an injected repository.

    Args:
        repository: RideRepository (or any object with the same methods)
        notifier: NotificationCenter used for driver/passenger notifications
        router: callable(origin, destination) -> RouteResult, must not raise
        restore_seats_on_cancel: return a cancelled booking's seats to its ride
    """

    def __init__(
        self,
        repository: RideRepository,
        notifier: NotificationCenter,
        router: Callable[[Any, Any], RouteResult] = get_route,
        restore_seats_on_cancel: bool = True,
    ):
        self.repository = repository
        self.notifier = notifier
        self.router = router
        self.restore_seats_on_cancel = restore_seats_on_cancel

    # ---------- search ----------

    def search(self, source, destination, date_filter: Optional[date] = None) -> SearchResult:
        source = _require_coordinates(source, "source")
        destination = _require_coordinates(destination, "destination")

        rides = self.repository.query_active_rides(date_filter)
        matches = find_matches(rides, source, destination)
        logger.info(f"Search matched {len(matches)} of {len(rides)} active rides")

        route = RouteResult()
        if matches:
            route = self._display_route(source, destination)
        return SearchResult(matches=matches, route=route)

    def _display_route(self, source: Coordinates, destination: Coordinates) -> RouteResult:
        try:
            return self.router(source, destination)
        except Exception:
            logger.exception("Route lookup failed, returning matches without a route")
            return RouteResult()

    # ---------- booking ----------

    def book_ride(self, ride: Ride, seats: int, passenger: Optional[AuthUser]) -> Booking:
        """
        Reserve ``seats`` on ``ride`` for ``passenger``.

        The seat count is decremented with a conditional update first, so two
        concurrent bookings cannot both take the last seats; the booking row is
        written afterwards and the decrement is undone if that write fails.
        """
        passenger = _require_user(passenger, "book a ride")
        if isinstance(seats, bool) or not isinstance(seats, int) or seats < 1:
            raise ValidationError("Seat count must be a whole number of at least 1")
        if ride.id is None:
            raise ValidationError("Ride has not been saved")
        if ride.status != RideStatus.ACTIVE:
            raise ValidationError("This ride is no longer available")
        if seats > ride.seats:
            raise InsufficientCapacityError(seats, ride.seats)

        updated = self._take_seats(ride, seats)
        try:
            booking = self.repository.create_booking(Booking.for_ride(ride, passenger, seats))
        except Exception:
            self._return_seats(ride.id, seats)
            raise
        logger.info(f"Booked {seats} seat(s) on ride {ride.id} for {passenger.id}, {updated.seats} left")

        self._notify_driver(ride, passenger, seats)
        return booking

    def _take_seats(self, ride: Ride, seats: int) -> Ride:
        current = ride
        for _ in range(MAX_SEAT_UPDATE_ATTEMPTS):
            if current.status != RideStatus.ACTIVE:
                raise ValidationError("This ride is no longer available")
            if seats > current.seats:
                raise InsufficientCapacityError(seats, current.seats)
            updated = self.repository.update_ride_seats(
                current.id, current.seats - seats, expected_seats=current.seats
            )
            if updated is not None:
                return updated
            logger.info(f"Seat count of ride {ride.id} changed concurrently, re-reading")
            current = self.repository.get_ride(ride.id)
            if current is None:
                raise ValidationError("This ride is no longer available")
        raise BackendWriteError("Seats on this ride are changing quickly, please try again")

    def _return_seats(self, ride_id: str, seats: int) -> Optional[Ride]:
        """Give seats back to a ride, never exceeding its published seat count."""
        for _ in range(MAX_SEAT_UPDATE_ATTEMPTS):
            try:
                current = self.repository.get_ride(ride_id)
                if current is None:
                    return None
                restored = current.seats + seats
                if current.total_seats is not None:
                    restored = min(restored, current.total_seats)
                if restored == current.seats:
                    return current
                updated = self.repository.update_ride_seats(
                    ride_id, restored, expected_seats=current.seats
                )
            except BackendError:
                logger.exception(f"Could not return {seats} seat(s) to ride {ride_id}")
                return None
            if updated is not None:
                return updated
        logger.error(f"Gave up returning {seats} seat(s) to ride {ride_id}")
        return None

    def _driver_name(self, ride: Ride) -> Optional[str]:
        try:
            profile = self.repository.get_profile(ride.driver_id)
        except BackendError:
            logger.warning(f"Driver profile lookup failed for ride {ride.id}")
            profile = None
        if profile and profile.full_name:
            return profile.full_name
        return ride.driver_email

    def _notify_driver(self, ride: Ride, passenger: AuthUser, seats: int):
        payload = {
            "ride_id": ride.id,
            "source": ride.source,
            "destination": ride.destination,
            "date_time": ride.date_time.isoformat(),
            "passenger_email": passenger.email,
            "seats": seats,
            "driver_name": self._driver_name(ride),
        }
        try:
            self.notifier.notify(NotificationKind.BOOKING_CONFIRMATION, payload, recipient_id=ride.driver_id)
        except Exception:
            logger.exception(f"Booking notification failed for ride {ride.id}")

    def _notify_passengers(self, ride: Ride, kind: NotificationKind):
        try:
            bookings = self.repository.query_active_bookings_for_ride(ride.id)
        except BackendError:
            logger.exception(f"Could not load passengers of ride {ride.id}")
            return
        payload = {
            "ride_id": ride.id,
            "source": ride.source,
            "destination": ride.destination,
            "date_time": ride.date_time.isoformat(),
        }
        for booking in bookings:
            try:
                self.notifier.notify(
                    kind,
                    dict(payload, passenger_email=booking.passenger_email),
                    recipient_id=booking.passenger_id,
                )
            except Exception:
                logger.exception(f"{kind.value} notification failed for booking {booking.id}")

    # ---------- cancellation ----------

    def cancel_ride(self, ride_id: str, driver: Optional[AuthUser]) -> Ride:
        driver = _require_user(driver, "cancel a ride")
        ride = self.repository.get_ride(ride_id)
        if ride is None:
            raise ValidationError("Ride not found")
        if ride.driver_id != driver.id:
            raise ValidationError("Only the driver can cancel this ride")
        if ride.status != RideStatus.ACTIVE:
            raise ValidationError(f"Ride is already {ride.status.value}")

        cancelled = self.repository.update_ride_status(ride_id, RideStatus.CANCELLED)
        logger.info(f"Ride {ride_id} cancelled by {driver.id}")
        self._notify_passengers(cancelled, NotificationKind.RIDE_CANCELLATION)
        return cancelled

    def cancel_booking(self, booking_id: str, passenger: Optional[AuthUser]) -> Booking:
        passenger = _require_user(passenger, "cancel a booking")
        booking = self.repository.get_booking(booking_id)
        if booking is None:
            raise ValidationError("Booking not found")
        if booking.passenger_id != passenger.id:
            raise ValidationError("Only the passenger can cancel this booking")
        if booking.status != BookingStatus.ACTIVE:
            raise ValidationError("Booking is already cancelled")

        cancelled = self.repository.update_booking_status(booking_id, BookingStatus.CANCELLED)
        logger.info(f"Booking {booking_id} cancelled by {passenger.id}")
        if self.restore_seats_on_cancel:
            ride = self.repository.get_ride(booking.ride_id)
            if ride is not None and ride.status == RideStatus.ACTIVE:
                self._return_seats(ride.id, booking.seats)
        return cancelled

    # ---------- ride offers ----------

    def offer_ride(
        self,
        driver: Optional[AuthUser],
        source: Optional[AddressRecord],
        destination: Optional[AddressRecord],
        departure: Optional[datetime],
        seats: int,
        price: float,
        car_model: str,
        car_number: str,
        recurring_days: Optional[List[str]] = None,
    ) -> Ride:
        driver = _require_user(driver, "offer a ride")
        if source is None or destination is None:
            raise ValidationError("Please select valid source and destination locations")
        _require_in_area(source.location, "Source")
        _require_in_area(destination.location, "Destination")
        if departure is None:
            raise ValidationError("Please select valid date and time")
        _require_future(departure)
        if isinstance(seats, bool) or not isinstance(seats, int) or seats < 1:
            raise ValidationError("Seats must be at least 1")
        if price is None or price < 0:
            raise ValidationError("Price cannot be negative")
        if not (car_model or "").strip() or not (car_number or "").strip():
            raise ValidationError("Please fill in all required fields")
        days = [day.lower() for day in recurring_days or []]
        unknown = [day for day in days if day not in WEEKDAYS]
        if unknown:
            raise ValidationError(f"Unknown weekdays: {', '.join(unknown)}")

        ride = Ride(
            driver_id=driver.id,
            driver_email=driver.email,
            source=source.formatted_label,
            source_location=source.location,
            destination=destination.formatted_label,
            destination_location=destination.location,
            date_time=departure,
            seats=seats,
            total_seats=seats,
            price=float(price),
            car_model=car_model.strip(),
            car_number=car_number.strip().upper(),
            is_recurring=bool(days),
            recurring_days=days or None,
        )
        created = self.repository.create_ride(ride)
        logger.info(f"Ride {created.id} offered by {driver.id}")
        return created

    def update_ride(self, ride_id: str, driver: Optional[AuthUser], changes: Dict[str, Any]) -> Ride:
        driver = _require_user(driver, "update a ride")
        unknown = set(changes) - EDITABLE_RIDE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot change {', '.join(sorted(unknown))}")
        ride = self.repository.get_ride(ride_id)
        if ride is None:
            raise ValidationError("Ride not found")
        if ride.driver_id != driver.id:
            raise ValidationError("Only the driver can update this ride")
        if ride.status != RideStatus.ACTIVE:
            raise ValidationError(f"Ride is already {ride.status.value}")

        try:
            merged = Ride.model_validate({**ride.model_dump(), **changes})
        except ValueError as e:
            raise ValidationError(str(e)) from e
        _require_in_area(merged.source_location, "Source")
        _require_in_area(merged.destination_location, "Destination")
        if "date_time" in changes:
            _require_future(merged.date_time)
        record = merged.to_record()
        updated = self.repository.update_ride(ride_id, {k: record[k] for k in changes})
        self._notify_passengers(updated, NotificationKind.RIDE_UPDATE)
        return updated

    # ---------- my rides ----------

    def list_offered_rides(self, driver_id: str) -> List[Ride]:
        rides = self.repository.query_rides_by_driver(driver_id)
        return sorted(rides, key=lambda r: r.date_time, reverse=True)

    def list_booked_rides(self, passenger_id: str) -> List[Tuple[Booking, Ride]]:
        booked = []
        for booking in self.repository.query_bookings_by_passenger(passenger_id):
            ride = self.repository.get_ride(booking.ride_id)
            if ride is None:
                continue
            booked.append((booking, ride))
        booked.sort(key=lambda pair: pair[1].date_time, reverse=True)
        return booked
