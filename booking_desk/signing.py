"""Signed, expiring capability links for cancel/reschedule/manage actions.

A token is ``base64url(json payload) + "." + base64url(hmac-sha256)``, with
the signature computed over the encoded payload segment. Tokens carry their
own expiry, so nothing is stored server-side for them.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from booking_desk.errors import SigningConfigError
from booking_desk.models import (
    LINK_ACTIONS,
    BookingIdentity,
    SignedLink,
    SignedLinkPayload,
    to_iso_utc,
)
from booking_desk.urls import build_absolute_url

if TYPE_CHECKING:
    from booking_desk.alias_store import ManageLinkAliasStore

logger = logging.getLogger(__name__)

DEFAULT_LINK_TTL = timedelta(days=7)
MANAGE_LABEL = "Manage this meeting:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.b64decode(value + padding, altchars=b"-_", validate=True)


class LinkSigner:
    """Mints and verifies HMAC-SHA256 capability tokens."""

    def __init__(
        self,
        secret: Optional[str],
        clock: Callable[[], datetime] = _utcnow,
        default_ttl: timedelta = DEFAULT_LINK_TTL,
    ):
        self._secret = secret
        self._clock = clock
        self.default_ttl = default_ttl

    def _key(self) -> bytes:
        if not self._secret:
            raise SigningConfigError(
                "Missing SIGNING_SECRET environment variable for link signing."
            )
        return self._secret.encode("utf-8")

    def _signature(self, payload_segment: str) -> bytes:
        return hmac.new(
            self._key(), payload_segment.encode("ascii"), hashlib.sha256
        ).digest()

    def sign(self, payload: SignedLinkPayload) -> str:
        payload_json = json.dumps(
            payload.to_dict(), separators=(",", ":"), ensure_ascii=False
        )
        payload_segment = _b64url_encode(payload_json.encode("utf-8"))
        return f"{payload_segment}.{_b64url_encode(self._signature(payload_segment))}"

    @staticmethod
    def decode(token: Optional[str]) -> Optional[SignedLinkPayload]:
        """Read the payload without checking the signature.

        Only for inspecting ``expiresAt``/``action`` to build error messages.
        """
        if not token or not isinstance(token, str):
            return None
        payload_segment = token.split(".")[0]
        if not payload_segment:
            return None
        try:
            data = json.loads(_b64url_decode(payload_segment).decode("utf-8"))
        except (binascii.Error, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        return SignedLinkPayload.from_dict(data)

    def verify(
        self, token: Optional[str], now: Optional[datetime] = None
    ) -> Optional[SignedLinkPayload]:
        """Return the payload if the token is authentic, complete and unexpired."""
        if not token or not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        payload_segment, signature_segment = parts

        try:
            expected = _b64url_encode(self._signature(payload_segment))
        except UnicodeEncodeError:
            return None
        if not hmac.compare_digest(
            expected.encode("ascii"), signature_segment.encode("utf-8")
        ):
            return None

        payload = self.decode(token)
        if payload is None or not payload.has_required_fields():
            return None

        expires_at = payload.expires_at_datetime
        if expires_at is None or expires_at < (now or self._clock()):
            return None
        return payload

    def generate_signed_link(
        self,
        action: str,
        identity: BookingIdentity,
        ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> SignedLink:
        if action not in LINK_ACTIONS:
            raise ValueError(f"Unknown link action '{action}'")
        issued_at = now or self._clock()
        expires_at = to_iso_utc(issued_at + (ttl or self.default_ttl))
        token = self.sign(identity.to_payload(action, expires_at))
        return SignedLink(token=token, expires_at=expires_at)

    def create_management_links(
        self,
        identity: BookingIdentity,
        ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, SignedLink]:
        """Mint one token per action, all sharing a single expiry."""
        issued_at = now or self._clock()
        return {
            action: self.generate_signed_link(action, identity, ttl, issued_at)
            for action in LINK_ACTIONS
        }


def describe_management_links(
    links: Dict[str, SignedLink],
    base_url: str,
    aliases: Optional["ManageLinkAliasStore"] = None,
) -> Dict[str, Dict[str, Any]]:
    """Attach paths and absolute URLs to freshly minted links.

    The manage link is shortened through the alias store when one is given.
    """
    manage = links["manage"]
    manage_alias = None
    if aliases is not None:
        try:
            manage_alias = aliases.register(manage.token, manage.expires_at)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not register manage link alias: {e}")

    paths = {
        "cancel": f"/cancel/{links['cancel'].token}",
        "reschedule": f"/reschedule/{links['reschedule'].token}",
        "manage": f"/m/{manage_alias}" if manage_alias else f"/manage/{manage.token}",
    }

    return {
        action: {
            **links[action].to_dict(),
            "path": paths[action],
            "url": build_absolute_url(paths[action], base_url),
        }
        for action in LINK_ACTIONS
    }


def upsert_manage_link_in_description(
    description: Optional[str], manage_url: str
) -> str:
    """Replace (or append) the "Manage this meeting" section of a description."""
    normalized = description.replace("\r\n", "\n") if isinstance(description, str) else ""
    lines = normalized.split("\n") if normalized else []

    kept = []
    skip_next = False
    for line in lines:
        if skip_next:
            skip_next = False
            continue
        if line.strip().lower() == MANAGE_LABEL.lower():
            skip_next = True
            continue
        kept.append(line)

    url = manage_url.strip()
    if not url:
        return "\n".join(kept)

    while kept and kept[-1].strip() == "":
        kept.pop()
    if kept:
        kept.append("")
    kept.extend([MANAGE_LABEL, url])
    return "\n".join(kept)
