"""
Client context for the collect endpoint: IP, user agent, country and
the URL / referrer split.

User-agent classification is a short ordered pattern table, not a full
parser; it only needs to produce stable dimension values.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

# Most specific first: Edge and Opera also contain "Chrome", Chrome contains "Safari"
_BROWSERS = [
    ("edge", re.compile(r"Edg(?:e|A|iOS)?/", re.I)),
    ("opera", re.compile(r"OPR/|Opera", re.I)),
    ("samsung", re.compile(r"SamsungBrowser/", re.I)),
    ("yandex", re.compile(r"YaBrowser/", re.I)),
    ("firefox", re.compile(r"Firefox/|FxiOS/", re.I)),
    ("chrome", re.compile(r"Chrome/|CriOS/", re.I)),
    ("safari", re.compile(r"Version/[\d.]+.*Safari/", re.I)),
    ("ie", re.compile(r"MSIE |Trident/", re.I)),
]

_OS = [
    ("iOS", re.compile(r"iPhone|iPad|iPod", re.I)),
    ("Android OS", re.compile(r"Android", re.I)),
    ("Chrome OS", re.compile(r"CrOS", re.I)),
    ("Windows 10", re.compile(r"Windows NT 10\.0", re.I)),
    ("Windows", re.compile(r"Windows", re.I)),
    ("Mac OS", re.compile(r"Macintosh|Mac OS X", re.I)),
    ("Linux", re.compile(r"Linux|X11", re.I)),
]

_TABLET = re.compile(r"iPad|Tablet|Android(?!.*Mobile)", re.I)
_MOBILE = re.compile(r"Mobi|iPhone|iPod|Android.*Mobile|Windows Phone", re.I)

_BOT = re.compile(
    r"bot\b|bot/|crawler|spider|crawling|slurp|facebookexternalhit|embedly|"
    r"headlesschrome|lighthouse|pingdom|uptime|python-requests|python-httpx|"
    r"curl/|wget/|go-http-client|java/|okhttp|axios/|node-fetch|phantomjs|puppeteer|playwright",
    re.I,
)

# CDN / proxy headers carrying an ISO country code, checked in order
COUNTRY_HEADERS = (
    "cf-ipcountry",
    "cloudfront-viewer-country",
    "x-vercel-ip-country",
    "x-country-code",
)

IP_HEADERS = ("x-forwarded-for", "x-real-ip")


@dataclass(frozen=True)
class ClientInfo:
    ip: str | None
    user_agent: str
    browser: str | None
    os: str | None
    device: str | None
    country: str | None


def _valid_ip(value: str | None) -> str | None:
    if not value:
        return None
    candidate = value.split(",")[0].strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def get_client_ip(headers, peer: str | None = None, trusted_header: str = "") -> str | None:
    """First valid address from the trusted header, proxy headers, then the socket peer."""
    names = ((trusted_header.lower(),) if trusted_header else ()) + IP_HEADERS
    for name in names:
        ip = _valid_ip(headers.get(name))
        if ip:
            return ip
    return _valid_ip(peer)


def get_country(headers) -> str | None:
    for name in COUNTRY_HEADERS:
        value = (headers.get(name) or "").strip().upper()
        # XX / T1 are Cloudflare's unknown / Tor markers
        if len(value) == 2 and value.isalpha() and value != "XX":
            return value
    return None


def _first_match(table, user_agent: str) -> str | None:
    for name, pattern in table:
        if pattern.search(user_agent):
            return name
    return None


def get_device(user_agent: str, screen: str | None = None) -> str | None:
    if _TABLET.search(user_agent):
        return "tablet"
    if _MOBILE.search(user_agent):
        return "mobile"
    if screen:
        width = screen.lower().split("x", 1)[0]
        if width.isdigit():
            px = int(width)
            if px <= 480:
                return "mobile"
            if px <= 1024:
                return "tablet"
            return "laptop" if px <= 1440 else "desktop"
    return "desktop" if user_agent else None


def is_bot(user_agent: str) -> bool:
    return not user_agent or bool(_BOT.search(user_agent))


def get_client_info(headers, peer: str | None = None, screen: str | None = None, trusted_header: str = "") -> ClientInfo:
    user_agent = headers.get("user-agent") or ""
    return ClientInfo(
        ip=get_client_ip(headers, peer, trusted_header),
        user_agent=user_agent,
        browser=_first_match(_BROWSERS, user_agent),
        os=_first_match(_OS, user_agent),
        device=get_device(user_agent, screen),
        country=get_country(headers),
    )


# ── URLs ──────────────────────────────────────────────────


def split_url(url: str | None) -> tuple[str, str | None]:
    """(path, query) of a page URL; a bare path is accepted as-is."""
    if not url:
        return "/", None
    parts = urlsplit(url)
    return parts.path or "/", parts.query or None


def split_referrer(referrer: str | None, hostname: str | None = None) -> tuple[str | None, str | None, str | None]:
    """
    (path, query, domain) of the referrer.

    Self-referrals from ``hostname`` are dropped, and a leading ``www.``
    is removed from the domain.
    """
    if not referrer:
        return None, None, None
    parts = urlsplit(referrer)
    domain = (parts.hostname or "").lower()
    if domain.startswith("www."):
        domain = domain[4:]
    if hostname and domain and domain == hostname.lower().removeprefix("www."):
        return None, None, None
    return parts.path or None, parts.query or None, domain or None
