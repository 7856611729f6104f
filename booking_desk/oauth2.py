"""OAuth2 refresh-token exchange for Google Calendar access."""

import logging
import time
from typing import Any, Dict, Tuple

import requests  # type: ignore

from booking_desk.config import OAuth2Config
from booking_desk.errors import GoogleAuthError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]

# Refresh this many seconds before the cached token actually expires.
EXPIRY_MARGIN_SECONDS = 300
REQUEST_TIMEOUT_SECONDS = 30


def _error_payload(response: requests.Response) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def get_access_token(oauth2_config: OAuth2Config) -> Tuple[str, int]:
    """Return a bearer token and its expiry (epoch seconds).

    A cached token is reused until shortly before it expires; otherwise the
    refresh token is exchanged for a new one and cached on ``oauth2_config``.

    Raises:
        GoogleAuthError: If Google rejects the exchange or returns no token
    """
    current_time = int(time.time())
    if (
        oauth2_config.access_token
        and oauth2_config.token_expiry
        and oauth2_config.token_expiry > current_time + EXPIRY_MARGIN_SECONDS
    ):
        return oauth2_config.access_token, oauth2_config.token_expiry

    logger.info("Refreshing Google Calendar access token")

    data = {
        "client_id": oauth2_config.client_id,
        "client_secret": oauth2_config.client_secret,
        "refresh_token": oauth2_config.refresh_token,
        "grant_type": "refresh_token",
    }

    try:
        response = requests.post(
            GOOGLE_TOKEN_URI, data=data, timeout=REQUEST_TIMEOUT_SECONDS
        )
    except requests.RequestException as e:
        raise GoogleAuthError(f"Failed to reach Google token endpoint: {e}", 0)

    payload = _error_payload(response)

    if response.status_code != 200:
        error_code = payload.get("error") if isinstance(payload.get("error"), str) else "unknown_error"
        description = payload.get("error_description")
        if not isinstance(description, str):
            description = "Failed to exchange Google refresh token."
        logger.error(f"Failed to refresh token: {response.status_code} {error_code}")
        raise GoogleAuthError(
            f"{error_code}: {description}", response.status_code, payload
        )

    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise GoogleAuthError(
            "Received empty access token from Google.", response.status_code, payload
        )

    try:
        expires_in = int(payload.get("expires_in", 3600))
    except (TypeError, ValueError):
        expires_in = 0
    expiry = int(time.time()) + expires_in

    oauth2_config.access_token = access_token
    oauth2_config.token_expiry = expiry

    return access_token, expiry
