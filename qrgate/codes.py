from __future__ import annotations

"""
Guest token encoding and decoding.

A token identifies one guest group across every organizer account, so it
always carries the owner code next to the group id:

    USER:<owner>|GUEST:<group id>|COUNT:<quota>|PHONE:<phone>|NAME:<name>|TIME:<ms>

- Segments are joined with "|", keys and values split on the first ":".
- NAME is percent-encoded; USER and PHONE only escape "%" and "|" so that
  plain codes keep the same wire form as tokens minted by older clients.
- TIME is informational, nothing expires on it.

Decoding is lenient: unknown keys are skipped and missing ones come back as
None. Check GuestToken.is_valid before acting on a decoded token.
"""

import random
import string
import time
from dataclasses import dataclass
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

FIELD_SEP = "|"
KEY_SEP = ":"

# Characters allowed in the random part of a group id
_ID_ALPHABET = string.digits + string.ascii_lowercase


@dataclass
class GuestToken:
    owner: str | None = None
    group_id: str | None = None
    quota: int | None = None
    phone: str | None = None
    name: str | None = None
    timestamp: int | None = None

    @property
    def is_valid(self) -> bool:
        return bool(self.owner) and bool(self.group_id)


def _escape(value: str) -> str:
    return value.replace("%", "%25").replace(FIELD_SEP, "%7C")


def _to_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def encode_token(
    owner_code: str,
    group_id: str,
    quota: int,
    phone: str | None = None,
    name: str | None = None,
    timestamp: int | None = None,
) -> str:
    """Build the token string embedded in the QR image and invite link."""
    if timestamp is None:
        timestamp = int(time.time() * 1000)

    parts = [
        f"USER{KEY_SEP}{_escape(owner_code)}",
        f"GUEST{KEY_SEP}{_escape(group_id)}",
        f"COUNT{KEY_SEP}{quota}",
    ]
    if phone:
        parts.append(f"PHONE{KEY_SEP}{_escape(phone)}")
    if name:
        parts.append(f"NAME{KEY_SEP}{quote(name, safe='')}")
    parts.append(f"TIME{KEY_SEP}{timestamp}")
    return FIELD_SEP.join(parts)


def decode_token(token: str | None) -> GuestToken:
    """
    Parse a token into its fields, in any field order.

    Never raises. Values keep everything after the first ":" so names and
    codes containing colons survive.
    """
    fields: dict[str, str] = {}
    for segment in (token or "").strip().split(FIELD_SEP):
        key, sep, value = segment.partition(KEY_SEP)
        if not sep:
            continue
        fields[key.strip().upper()] = value

    def _text(key: str) -> str | None:
        value = fields.get(key)
        if value is None or value == "":
            return None
        return unquote(value)

    return GuestToken(
        owner=_text("USER"),
        group_id=_text("GUEST"),
        quota=_to_int(fields.get("COUNT")),
        phone=_text("PHONE"),
        name=_text("NAME"),
        timestamp=_to_int(fields.get("TIME")),
    )


def extract_from_scanned_payload(raw: str | None) -> str:
    """
    Pull the token out of a scan result.

    Camera apps hand back either the bare token or the full invite URL; for a
    URL the "qr" query parameter wins, anything else falls back to the raw
    text after a best-effort percent-decode.
    """
    raw = (raw or "").strip()
    if not raw:
        return ""

    try:
        parts = urlsplit(raw)
    except ValueError:
        parts = None

    if parts is not None and ((parts.scheme and parts.netloc) or raw.startswith("?")):
        values = parse_qs(parts.query).get("qr")
        if values:
            return values[0].strip()

    # An already-structured token must not be decoded again, or an encoded
    # "|" inside NAME would turn into a field separator
    if KEY_SEP in raw:
        return raw
    return unquote(raw)


def build_invite_link(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/invite?{urlencode({'qr': token}, quote_via=quote)}"


def build_display_link(base_url: str, group_id: str) -> str:
    """Short link variant that lets the server look the group up by id."""
    return f"{base_url.rstrip('/')}/qr-display?{urlencode({'guest': group_id}, quote_via=quote)}"


def mint_group_id(seq: int) -> str:
    """Generate an id like "GROUP_3_k2x9qa"."""
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(6))
    return f"GROUP_{seq}_{suffix}"
