"""
Supabase-backed access to the rides, bookings and users tables.
"""

import logging
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as ModelValidationError
from supabase import Client, create_client

from errors import BackendError, BackendWriteError, ValidationError
from models import Booking, BookingStatus, Ride, RideStatus, UserProfile
from utils import day_window

logger = logging.getLogger(__name__)

RIDES_TABLE = "rides"
BOOKINGS_TABLE = "bookings"
USERS_TABLE = "users"


@lru_cache(maxsize=4)
def get_client(url: str, key: str) -> Client:
    if not url or not key:
        raise BackendError("Missing Supabase settings: SUPABASE_URL and SUPABASE_KEY are required")
    return create_client(url, key)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RideRepository:
    """
    Thin wrapper over a Supabase client.

    Every call is a single PostgREST request; failures are re-raised as
    BackendError (reads) or BackendWriteError (writes) and never retried.
    """

    def __init__(self, client: Client):
        self.client = client

    def _execute(self, query, action: str, error_cls=BackendError) -> List[Dict[str, Any]]:
        try:
            res = query.execute()
        except Exception as e:
            logger.error(f"Supabase {action} failed: {e}")
            raise error_cls(f"Failed to {action}") from e
        return list(getattr(res, "data", None) or [])

    def _insert(self, table: str, payload: Dict[str, Any], action: str) -> Dict[str, Any]:
        rows = self._execute(
            self.client.table(table).insert(payload), action, error_cls=BackendWriteError
        )
        if not rows:
            raise BackendWriteError(f"Failed to {action}: no row returned")
        return rows[0]

    def _patch(self, table: str, row_id: str, fields: Dict[str, Any], action: str) -> Dict[str, Any]:
        payload = dict(fields, updated_at=_now())
        rows = self._execute(
            self.client.table(table).update(payload).eq("id", row_id),
            action,
            error_cls=BackendWriteError,
        )
        if not rows:
            raise BackendWriteError(f"Failed to {action}: {row_id} not found")
        return rows[0]

    @staticmethod
    def _parse_rows(model, rows) -> list:
        parsed = []
        for row in rows:
            try:
                parsed.append(model.model_validate(row))
            except ModelValidationError as e:
                logger.warning(
                    f"Skipping malformed {model.__name__.lower()} {row.get('id')}: {e.error_count()} errors"
                )
        return parsed

    @classmethod
    def _parse_rides(cls, rows) -> List[Ride]:
        return cls._parse_rows(Ride, rows)

    @classmethod
    def _parse_bookings(cls, rows) -> List[Booking]:
        return cls._parse_rows(Booking, rows)

    @staticmethod
    def _parse_one(model, row, action: str, error_cls=BackendError):
        try:
            return model.model_validate(row)
        except ModelValidationError as e:
            logger.error(f"Malformed row from {action}: {e.error_count()} errors")
            raise error_cls(f"Failed to {action}: malformed {model.__name__.lower()} record") from e

    # ---------- rides ----------

    def query_active_rides(self, date_filter: Optional[date] = None) -> List[Ride]:
        """All active rides, optionally limited to one local calendar day. Not paginated."""
        query = self.client.table(RIDES_TABLE).select("*").eq("status", RideStatus.ACTIVE.value)
        if date_filter is not None:
            start, end = day_window(date_filter)
            query = query.gte("date_time", start.isoformat()).lte("date_time", end.isoformat())
        return self._parse_rides(self._execute(query, "query active rides"))

    def query_rides_by_driver(self, driver_id: str) -> List[Ride]:
        query = self.client.table(RIDES_TABLE).select("*").eq("driver_id", driver_id)
        return self._parse_rides(self._execute(query, "query rides by driver"))

    def get_ride(self, ride_id: str) -> Optional[Ride]:
        rows = self._execute(
            self.client.table(RIDES_TABLE).select("*").eq("id", ride_id), "fetch ride"
        )
        rides = self._parse_rides(rows)
        return rides[0] if rides else None

    def create_ride(self, ride: Ride) -> Ride:
        now = _now()
        payload = dict(ride.to_record(), created_at=now, updated_at=now)
        if payload.get("total_seats") is None:
            payload["total_seats"] = payload["seats"]
        row = self._insert(RIDES_TABLE, payload, "create ride")
        return self._parse_one(Ride, row, "create ride", BackendWriteError)

    def update_ride(self, ride_id: str, changes: Dict[str, Any]) -> Ride:
        row = self._patch(RIDES_TABLE, ride_id, changes, "update ride")
        return self._parse_one(Ride, row, "update ride", BackendWriteError)

    def update_ride_seats(
        self, ride_id: str, new_seat_count: int, expected_seats: Optional[int] = None
    ) -> Optional[Ride]:
        """
        Set a ride's seat count.

        With ``expected_seats`` the update only applies while the stored count
        still equals it (compare-and-set); None is returned when it does not.
        """
        if new_seat_count < 0:
            raise ValidationError("Seat count cannot be negative")
        if expected_seats is None:
            return self.update_ride(ride_id, {"seats": new_seat_count})

        query = (
            self.client.table(RIDES_TABLE)
            .update({"seats": new_seat_count, "updated_at": _now()})
            .eq("id", ride_id)
            .eq("seats", expected_seats)
        )
        rows = self._execute(query, "update ride seats", error_cls=BackendWriteError)
        if not rows:
            return None
        return self._parse_one(Ride, rows[0], "update ride seats", BackendWriteError)

    def update_ride_status(self, ride_id: str, status: RideStatus) -> Ride:
        return self.update_ride(ride_id, {"status": RideStatus(status).value})

    # ---------- bookings ----------

    def create_booking(self, booking: Booking) -> Booking:
        now = _now()
        payload = dict(booking.to_record(), created_at=now, updated_at=now)
        row = self._insert(BOOKINGS_TABLE, payload, "create booking")
        return self._parse_one(Booking, row, "create booking", BackendWriteError)

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        rows = self._execute(
            self.client.table(BOOKINGS_TABLE).select("*").eq("id", booking_id), "fetch booking"
        )
        return self._parse_one(Booking, rows[0], "fetch booking") if rows else None

    def update_booking_status(self, booking_id: str, status: BookingStatus) -> Booking:
        row = self._patch(
            BOOKINGS_TABLE,
            booking_id,
            {"status": BookingStatus(status).value},
            "update booking status",
        )
        return self._parse_one(Booking, row, "update booking status", BackendWriteError)

    def query_bookings_by_passenger(self, passenger_id: str) -> List[Booking]:
        rows = self._execute(
            self.client.table(BOOKINGS_TABLE).select("*").eq("passenger_id", passenger_id),
            "query bookings by passenger",
        )
        return self._parse_bookings(rows)

    def query_active_bookings_for_ride(self, ride_id: str) -> List[Booking]:
        query = (
            self.client.table(BOOKINGS_TABLE)
            .select("*")
            .eq("ride_id", ride_id)
            .eq("status", BookingStatus.ACTIVE.value)
        )
        rows = self._execute(query, "query bookings for ride")
        return self._parse_bookings(rows)

    # ---------- profiles ----------

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        rows = self._execute(
            self.client.table(USERS_TABLE).select("*").eq("id", user_id), "fetch profile"
        )
        return UserProfile.model_validate(rows[0]) if rows else None

    def create_profile(self, user_id: str, email: Optional[str]) -> UserProfile:
        now = _now()
        profile = UserProfile(id=user_id, email=email)
        payload = profile.model_dump(mode="json", exclude={"created_at", "updated_at"})
        payload.update(created_at=now, updated_at=now)
        return UserProfile.model_validate(self._insert(USERS_TABLE, payload, "create profile"))

    def update_profile(self, user_id: str, fields: Dict[str, Any]) -> UserProfile:
        fields = {k: v for k, v in fields.items() if k not in ("id", "created_at", "updated_at")}
        return UserProfile.model_validate(self._patch(USERS_TABLE, user_id, fields, "update profile"))
