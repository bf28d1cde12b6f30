from datetime import date as Date
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from config import WEEKDAYS


class RideStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class BookingStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class NotificationKind(str, Enum):
    BOOKING_CONFIRMATION = "BOOKING_CONFIRMATION"
    RIDE_UPDATE = "RIDE_UPDATE"
    RIDE_CANCELLATION = "RIDE_CANCELLATION"
    NEW_MESSAGE = "NEW_MESSAGE"


def _id_as_text(value):
    return None if value is None else str(value)


def _localize(value: datetime) -> datetime:
    # naive timestamps are taken as local time
    if value.tzinfo is None:
        return value.astimezone()
    return value


class Coordinates(BaseModel):
    lat: float
    lng: float

    def as_tuple(self) -> Tuple[float, float]:
        return (self.lat, self.lng)


class PlaceCandidate(BaseModel):
    label: str
    location: Coordinates
    external_id: Optional[str] = None


class AddressRecord(BaseModel):
    location: Coordinates
    formatted_label: str
    primary_label: str
    secondary_label: str = ""
    external_id: Optional[str] = None


class RouteResult(BaseModel):
    """Driving route between two points; the default instance is the null result."""

    geometry: Optional[Dict[str, Any]] = None
    distance: float = 0
    duration: float = 0

    @property
    def is_empty(self) -> bool:
        return self.geometry is None

    def path(self) -> List[Tuple[float, float]]:
        """Return the route as (lat, lng) pairs; GeoJSON stores [lng, lat]."""
        if not self.geometry:
            return []
        return [(point[1], point[0]) for point in self.geometry.get("coordinates", [])]


class AuthUser(BaseModel):
    id: str
    email: Optional[str] = None


class Ride(BaseModel):
    id: Optional[str] = None
    driver_id: str
    driver_email: Optional[str] = None
    source: str
    source_location: Optional[Coordinates] = None
    destination: str
    destination_location: Optional[Coordinates] = None
    date_time: datetime
    seats: int = Field(ge=0)
    total_seats: Optional[int] = Field(default=None, ge=0)
    price: float = Field(default=0, ge=0)
    car_model: str = ""
    car_number: str = ""
    status: RideStatus = RideStatus.ACTIVE
    is_recurring: bool = False
    recurring_days: Optional[List[str]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    coerce_ids = field_validator("id", "driver_id", mode="before")(_id_as_text)

    @field_validator("date_time")
    @classmethod
    def aware_departure(cls, value: datetime) -> datetime:
        return _localize(value)

    @field_validator("recurring_days")
    @classmethod
    def known_weekdays(cls, value):
        if value is None:
            return value
        days = [day.strip().lower() for day in value]
        unknown = [day for day in days if day not in WEEKDAYS]
        if unknown:
            raise ValueError(f"Unknown weekdays: {', '.join(unknown)}")
        # keep calendar order, drop duplicates
        return [day for day in WEEKDAYS if day in days]

    @property
    def has_locations(self) -> bool:
        return self.source_location is not None and self.destination_location is not None

    @property
    def is_bookable(self) -> bool:
        return self.status == RideStatus.ACTIVE and self.seats > 0

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id", "created_at", "updated_at"})


class Booking(BaseModel):
    id: Optional[str] = None
    ride_id: str
    passenger_id: str
    passenger_email: Optional[str] = None
    seats: int = Field(ge=1)
    status: BookingStatus = BookingStatus.ACTIVE
    source: str = ""
    destination: str = ""
    date_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    coerce_ids = field_validator("id", "ride_id", "passenger_id", mode="before")(_id_as_text)

    @classmethod
    def for_ride(cls, ride: Ride, passenger: AuthUser, seats: int) -> "Booking":
        """Build an active booking carrying a snapshot of the ride's endpoints and time."""
        return cls(
            ride_id=ride.id,
            passenger_id=passenger.id,
            passenger_email=passenger.email,
            seats=seats,
            source=ride.source,
            destination=ride.destination,
            date_time=ride.date_time,
        )

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id", "created_at", "updated_at"})


class UserProfile(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: str = ""
    phone: str = ""
    gender: str = ""
    age: str = ""
    address: str = ""
    emergency_contact: str = ""
    preferred_pickup_locations: str = ""
    preferred_drop_locations: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("age", mode="before")
    @classmethod
    def age_as_text(cls, value):
        return "" if value is None else str(value)


class SearchQuery(BaseModel):
    source: Optional[Coordinates] = None
    destination: Optional[Coordinates] = None
    date: Optional[Date] = None


class RideMatch(BaseModel):
    ride: Ride
    source_distance: float
    destination_distance: float

    @property
    def combined_distance(self) -> float:
        return self.source_distance + self.destination_distance


class SearchResult(BaseModel):
    matches: List[RideMatch] = Field(default_factory=list)
    route: RouteResult = Field(default_factory=RouteResult)

    @property
    def rides(self) -> List[Ride]:
        return [match.ride for match in self.matches]


class Notification(BaseModel):
    kind: NotificationKind
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    recipient_id: Optional[str] = None
