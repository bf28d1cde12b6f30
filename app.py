import logging
from collections import deque
from datetime import datetime, timedelta

import streamlit as st
from streamlit import runtime
from streamlit.runtime.scriptrunner import get_script_run_ctx

from auth import PROFILE_FIELDS, save_profile, show_login, sign_out
from config import SERVICE_BOUNDS, WEEKDAYS, get_settings
from db import RideRepository, get_client
from errors import InsufficientCapacityError, RideshareError
from geocoding import format_address, search_location
from log_config import setup_logging
from matching import RideMatcher
from models import BookingStatus, RideStatus
from notifications import NotificationCenter
from routing import get_route
from utils import format_departure, format_distance

# ===========================
# CONFIG / INIT
# ===========================
st.set_page_config(page_title="Ridesharing", layout="centered")

settings = get_settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

if not settings.supabase_url or not settings.supabase_key:
    st.error("Missing Supabase secrets. Add SUPABASE_URL and SUPABASE_KEY in Streamlit Secrets.")
    st.stop()


@st.cache_resource
def get_notification_center() -> NotificationCenter:
    # one per server process, shared by every session
    return NotificationCenter()


@st.cache_resource
def get_supabase():
    return get_client(settings.supabase_url, settings.supabase_key)


supabase = get_supabase()
repository = RideRepository(supabase)
notifier = get_notification_center()
matcher = RideMatcher(repository, notifier, restore_seats_on_cancel=settings.restore_seats_on_cancel)

# ===========================
# SESSION
# ===========================
for key, default in {
    "user": None,
    "inbox": None,
    "unsubscribe": None,
    "search_result": None,
    "search_params": None,
}.items():
    if key not in st.session_state:
        st.session_state[key] = default


def session_id():
    ctx = get_script_run_ctx()
    return ctx.session_id if ctx else None


def start_session(user):
    # closed or refreshed tabs never log out, drop their inboxes here
    if runtime.exists():
        notifier.prune(runtime.get_instance().is_active_session)
    st.session_state.user = user
    inbox = deque(maxlen=50)
    st.session_state.inbox = inbox
    st.session_state.unsubscribe = notifier.subscribe(
        inbox.append, recipient_id=user.id, key=session_id()
    )


def end_session():
    if st.session_state.unsubscribe:
        st.session_state.unsubscribe()
    sign_out(supabase)
    for key in ("user", "inbox", "unsubscribe", "search_result", "search_params"):
        st.session_state[key] = None


def drain_inbox():
    inbox = st.session_state.inbox
    while inbox:
        notification = inbox.popleft()
        st.toast(f"**{notification.title}** {notification.body}")


if not st.session_state.user:
    user = show_login(supabase, repository)
    if user:
        start_session(user)
        st.rerun()
    st.stop()

user = st.session_state.user
drain_inbox()

# ===========================
# HELPERS
# ===========================
def location_picker(label: str, key: str):
    """Text search plus a selectbox of in-area candidates; returns an AddressRecord or None."""
    query = st.text_input(label, key=f"{key}_query")
    candidates = search_location(query)
    if query and len(query.strip()) >= 3 and not candidates:
        st.caption("No matching places inside the service area.")
    if not candidates:
        return None
    candidate = st.selectbox(
        f"Select {label.lower()}",
        candidates,
        format_func=lambda c: c.label,
        key=f"{key}_choice",
    )
    return format_address(candidate) if candidate else None


def show_map(points, path=None):
    lats = [p[0] for p in points] + [p[0] for p in path or []]
    lons = [p[1] for p in points] + [p[1] for p in path or []]
    if not lats:
        lats, lons = [SERVICE_BOUNDS.center[0]], [SERVICE_BOUNDS.center[1]]
    st.map({"lat": lats, "lon": lons}, zoom=11)


def run_search(params):
    source, destination, day = params
    st.session_state.search_result = matcher.search(source.location, destination.location, day)
    st.session_state.search_params = params


# ===========================
# MAIN UI
# ===========================
st.sidebar.title(f"Welcome, {user.email}")
if st.sidebar.button("Log out"):
    end_session()
    st.rerun()

choice = st.sidebar.radio("Menu", ["Home", "Find Ride", "Offer Ride", "My Rides", "Profile"])

# ---------- Home ----------
if choice == "Home":
    st.title("Share a ride across Bangalore")
    st.write("Find a ride going your way, or offer the empty seats in your car.")
    show_map([SERVICE_BOUNDS.center])

# ---------- Find Ride ----------
elif choice == "Find Ride":
    st.title("Find a Ride")
    source = location_picker("Source", "find_source")
    destination = location_picker("Destination", "find_destination")
    filter_by_date = st.checkbox("Filter by date")
    day = st.date_input("Date", value=datetime.today()) if filter_by_date else None

    if st.button("Search"):
        try:
            if source is None or destination is None:
                st.error("Please select valid source and destination locations")
            else:
                run_search((source, destination, day))
        except RideshareError as e:
            logger.error(f"Search failed: {e}")
            st.error("Failed to search for rides. Please try again.")

    result = st.session_state.search_result
    params = st.session_state.search_params
    if result is not None:
        if not result.matches:
            st.info("No rides found within 2 km of your pickup and drop-off.")
        else:
            endpoints = [params[0].location.as_tuple(), params[1].location.as_tuple()]
            show_map(endpoints, result.route.path())
            if not result.route.is_empty:
                st.caption(
                    f"Route: {format_distance(result.route.distance)}, "
                    f"about {result.route.duration / 60:.0f} min"
                )
        for match in result.matches:
            ride = match.ride
            with st.container(border=True):
                st.write(f"🚗 **{ride.source}** → **{ride.destination}**")
                st.write(
                    f"{format_departure(ride.date_time)} | ₹{ride.price:.0f}/seat | "
                    f"{ride.seats} seat(s) left | {ride.car_model} ({ride.car_number})"
                )
                st.caption(
                    f"Pickup {format_distance(match.source_distance)} away, "
                    f"drop-off {format_distance(match.destination_distance)} away"
                )
                if ride.driver_id == user.id:
                    st.caption("This is your ride.")
                    continue
                if not ride.is_bookable:
                    st.caption("Fully booked.")
                    continue
                with st.form(f"book_{ride.id}"):
                    seats = st.number_input("Seats", 1, ride.seats, 1, step=1)
                    if st.form_submit_button("Book"):
                        try:
                            matcher.book_ride(ride, int(seats), user)
                        except InsufficientCapacityError:
                            st.error("Not enough seats available")
                        except RideshareError as e:
                            logger.error(f"Booking failed: {e}")
                            st.error(f"Failed to book ride. {e}")
                        else:
                            st.success("Ride booked!")
                            run_search(params)
                            st.rerun()

# ---------- Offer Ride ----------
elif choice == "Offer Ride":
    st.title("Offer a Ride")
    source = location_picker("Source", "offer_source")
    destination = location_picker("Destination", "offer_destination")
    if source and destination:
        route = get_route(source.location, destination.location)
        show_map([source.location.as_tuple(), destination.location.as_tuple()], route.path())

    with st.form("ride_form"):
        default_departure = datetime.now() + timedelta(hours=1)
        ride_date = st.date_input(
            "Date of departure", value=default_departure.date(), min_value=datetime.today()
        )
        departure = st.time_input("Departure Time", value=default_departure.time())
        seats = st.number_input("Available seats", 1, 8, 3, step=1)
        price = st.number_input("Price per seat (₹)", 0.0, 10000.0, 100.0, step=10.0)
        car_model = st.text_input("Car model")
        car_number = st.text_input("Car number")
        recurring_days = st.multiselect(
            "Repeat on", WEEKDAYS, format_func=lambda d: d.capitalize()
        )
        submit = st.form_submit_button("Submit Ride")

    if submit:
        try:
            ride = matcher.offer_ride(
                user,
                source,
                destination,
                datetime.combine(ride_date, departure),
                int(seats),
                float(price),
                car_model,
                car_number,
                recurring_days=recurring_days,
            )
        except RideshareError as e:
            st.error(f"Failed to create ride offer: {e}")
        else:
            st.success(f"Ride posted for {format_departure(ride.date_time)}!")

# ---------- My Rides ----------
elif choice == "My Rides":
    st.title("My Rides")
    offered_tab, booked_tab = st.tabs(["Rides Offered", "Rides Booked"])
    try:
        offered = matcher.list_offered_rides(user.id)
        booked = matcher.list_booked_rides(user.id)
    except RideshareError as e:
        logger.error(f"Loading rides failed: {e}")
        st.error("Failed to load rides")
        offered, booked = [], []

    with offered_tab:
        if not offered:
            st.info("You have not offered any rides yet.")
        for ride in offered:
            with st.container(border=True):
                st.write(f"**{ride.source}** → **{ride.destination}**")
                st.write(
                    f"{format_departure(ride.date_time)} | {ride.seats}/{ride.total_seats or ride.seats} "
                    f"seat(s) left | status: {ride.status.value}"
                )
                if ride.recurring_days:
                    st.caption("Repeats on " + ", ".join(d.capitalize() for d in ride.recurring_days))
                if ride.status == RideStatus.ACTIVE and st.button("Cancel ride", key=f"cancel_ride_{ride.id}"):
                    try:
                        matcher.cancel_ride(ride.id, user)
                    except RideshareError as e:
                        st.error(f"Failed to cancel ride. {e}")
                    else:
                        st.rerun()

    with booked_tab:
        if not booked:
            st.info("You have not booked any rides yet.")
        for booking, ride in booked:
            with st.container(border=True):
                st.write(f"**{booking.source}** → **{booking.destination}**")
                st.write(
                    f"{format_departure(booking.date_time)} | {booking.seats} seat(s) | "
                    f"booking: {booking.status.value} | ride: {ride.status.value}"
                )
                st.caption(f"Driver: {ride.driver_email} | {ride.car_model} ({ride.car_number})")
                if booking.status == BookingStatus.ACTIVE and st.button(
                    "Cancel booking", key=f"cancel_booking_{booking.id}"
                ):
                    try:
                        matcher.cancel_booking(booking.id, user)
                    except RideshareError as e:
                        st.error(f"Failed to cancel booking. {e}")
                    else:
                        st.rerun()

# ---------- Profile ----------
elif choice == "Profile":
    st.title("Profile")
    try:
        profile = repository.get_profile(user.id)
    except RideshareError as e:
        st.error(f"Failed to load profile. {e}")
        st.stop()

    current = profile.model_dump() if profile else {}
    with st.form("profile_form"):
        form = {}
        for field in PROFILE_FIELDS:
            form[field] = st.text_input(field.replace("_", " ").capitalize(), value=current.get(field, ""))
        submit = st.form_submit_button("Save profile")

    if submit:
        try:
            save_profile(repository, user, form)
        except RideshareError as e:
            st.error(str(e))
        else:
            st.success("Profile saved!")
