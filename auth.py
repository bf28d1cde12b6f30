import logging
from typing import Any, Dict, Optional

import streamlit as st

from db import RideRepository
from errors import AuthenticationError, BackendError, ValidationError
from models import AuthUser, UserProfile

logger = logging.getLogger(__name__)

PROFILE_FIELDS = (
    "full_name",
    "phone",
    "gender",
    "age",
    "address",
    "emergency_contact",
    "preferred_pickup_locations",
    "preferred_drop_locations",
)


def normalize_user(user_obj) -> Optional[AuthUser]:
    if not user_obj:
        return None
    if isinstance(user_obj, dict):
        uid, email = user_obj.get("id"), user_obj.get("email")
    else:
        uid, email = getattr(user_obj, "id", None), getattr(user_obj, "email", None)
    if not uid:
        return None
    return AuthUser(id=str(uid), email=email)


def _credentials(email: str, password: str) -> Dict[str, str]:
    email = (email or "").strip()
    if not email or not password:
        raise ValidationError("Email and password are required")
    return {"email": email, "password": password}


def sign_in(client, email: str, password: str) -> AuthUser:
    try:
        resp = client.auth.sign_in_with_password(_credentials(email, password))
    except ValidationError:
        raise
    except Exception as e:
        logger.warning(f"Login failed for {email}: {e}")
        raise AuthenticationError(f"Login failed: {e}") from e
    user = normalize_user(getattr(resp, "user", None))
    if user is None:
        raise AuthenticationError("Login failed. Check your credentials.")
    return user


def sign_up(client, repository: RideRepository, email: str, password: str) -> AuthUser:
    """Register with Supabase auth and create the user's empty profile row."""
    try:
        resp = client.auth.sign_up(_credentials(email, password))
    except ValidationError:
        raise
    except Exception as e:
        logger.warning(f"Registration failed for {email}: {e}")
        raise AuthenticationError(f"Registration failed: {e}") from e
    user = normalize_user(getattr(resp, "user", None))
    if user is None:
        raise AuthenticationError("Registration failed. Check your email address.")
    repository.create_profile(user.id, user.email)
    logger.info(f"Registered user {user.id}")
    return user


def sign_out(client):
    try:
        client.auth.sign_out()
    except Exception as e:
        # the local session is dropped either way
        logger.warning(f"Sign out failed: {e}")


def save_profile(repository: RideRepository, user: AuthUser, form: Dict[str, Any]) -> UserProfile:
    """Validate the profile editor form and persist it, creating the row if missing."""
    fields = {key: str(form.get(key) or "").strip() for key in PROFILE_FIELDS}
    if not fields["full_name"] or not fields["phone"]:
        raise ValidationError("Name and phone number are required")
    if fields["age"] and not fields["age"].isdigit():
        raise ValidationError("Age must be a number")
    if repository.get_profile(user.id) is None:
        repository.create_profile(user.id, user.email)
    return repository.update_profile(user.id, fields)


def show_login(client, repository: RideRepository) -> Optional[AuthUser]:
    st.title("Login or Register")
    email = st.text_input("Email")
    password = st.text_input("Password", type="password")
    action = st.radio("Action", ["Login", "Register"])

    if st.button(action):
        try:
            if action == "Login":
                user = sign_in(client, email, password)
            else:
                user = sign_up(client, repository, email, password)
        except (AuthenticationError, ValidationError, BackendError) as e:
            st.error(str(e))
            return None
        st.success(f"{action} successful!")
        return user
    return None
