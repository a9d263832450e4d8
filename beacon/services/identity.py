"""
Visitor identity: fingerprints, deterministic session ids, visits and
the signed cache token returned to the tracker.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from beacon.timeseries import as_utc

SESSION_NAMESPACE = uuid.UUID("5f1c7a0e-2b7d-4c1e-9a57-3f9c0b8e6d21")


def fingerprint(website_id: str, ip: str | None, user_agent: str, distinct_id: str | None = None, salt: str = "") -> str:
    """
    Opaque visitor hash.  An identity id replaces IP + user agent so one
    identified visitor maps to one fingerprint across devices.
    """
    material = f"id:{distinct_id}" if distinct_id else f"{ip or ''}|{user_agent}"
    return hashlib.sha256(f"{salt}|{website_id}|{material}".encode("utf-8")).hexdigest()


def session_window(moment: datetime, window_minutes: int) -> int:
    """Index of the aligned session window containing ``moment``."""
    return int(as_utc(moment).timestamp()) // (window_minutes * 60)


def session_id(website_id: str, fp: str, window: int) -> str:
    return str(uuid.uuid5(SESSION_NAMESPACE, f"{website_id}:{fp}:{window}"))


def new_visit_id() -> str:
    return str(uuid.uuid4())


# ── cache token ───────────────────────────────────────────


@dataclass(frozen=True)
class CacheToken:
    website_id: str
    session_id: str
    visit_id: str
    window: int  # session window the session id was derived for
    iat: int  # unix seconds

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)

    def visit_expired(self, now: datetime, timeout_minutes: int) -> bool:
        return as_utc(now) - self.issued_at >= timedelta(minutes=timeout_minutes)

    def session_expired(self, moment: datetime, window_minutes: int) -> bool:
        return session_window(moment, window_minutes) != self.window


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _unb64(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(body: str, secret: str) -> str:
    return _b64(hmac.new(secret.encode("utf-8"), body.encode("ascii"), hashlib.sha256).digest())


def sign_token(token: CacheToken, secret: str) -> str:
    body = _b64(json.dumps(asdict(token), separators=(",", ":")).encode("utf-8"))
    return f"{body}.{_sign(body, secret)}"


def verify_token(value: str | None, secret: str) -> CacheToken | None:
    """Decode a token, or ``None`` when it is absent, tampered with or malformed."""
    if not value or "." not in value:
        return None
    body, signature = value.rsplit(".", 1)
    try:
        expected = _sign(body, secret)
    except UnicodeEncodeError:
        return None
    if not hmac.compare_digest(expected, signature):
        return None
    try:
        return CacheToken(**json.loads(_unb64(body)))
    except (ValueError, TypeError):
        return None
