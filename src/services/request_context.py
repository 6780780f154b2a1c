"""Visitor context for a redirect: client IP, user-agent breakdown, referrer."""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Optional

from starlette.requests import Request

from config.settings import settings

_MOBILE_RE = re.compile(r"Mobile|Android|iPhone|iPad")
_TABLET_RE = re.compile(r"Tablet|iPad")

# Checked in order; Chrome UAs also contain "Safari", Edge/Opera UAs contain "Chrome"
_BROWSERS = (
    ("Edg", "Edge"),
    ("OPR", "Opera"),
    ("Opera", "Opera"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
)
_OPERATING_SYSTEMS = (
    ("Windows", "Windows"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("iOS", "iOS"),
    ("Mac OS", "macOS"),
    ("Linux", "Linux"),
)


@dataclass(frozen=True)
class DeviceInfo:
    device: str
    browser: str
    os: str


@dataclass(frozen=True)
class RequestContext:
    session_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    device: str = "desktop"
    browser: str = "unknown"
    os: str = "unknown"
    new_session: bool = False


def parse_user_agent(user_agent: str) -> DeviceInfo:
    """Coarse device/browser/os classification from a User-Agent string."""
    ua = user_agent or ""
    if _TABLET_RE.search(ua) and "Mobile" not in ua:
        device = "tablet"
    elif _MOBILE_RE.search(ua):
        device = "mobile"
    else:
        device = "desktop"

    browser = next((name for token, name in _BROWSERS if token in ua), "unknown")
    os_name = next((name for token, name in _OPERATING_SYSTEMS if token in ua), "unknown")
    return DeviceInfo(device=device, browser=browser, os=os_name)


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop[:45]
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip[:45]
    return request.client.host if request.client else None


def build_request_context(request: Request) -> RequestContext:
    """Extract everything the click recorder stores about a visitor."""
    user_agent = request.headers.get("user-agent", "")
    info = parse_user_agent(user_agent)

    session_id = request.cookies.get(settings.SESSION_COOKIE_NAME, "")[:64]
    new_session = not session_id
    if new_session:
        session_id = uuid.uuid4().hex

    return RequestContext(
        session_id=session_id,
        ip_address=client_ip(request),
        user_agent=user_agent[:500] or None,
        referrer=request.headers.get("referer", "")[:1000] or None,
        device=info.device,
        browser=info.browser,
        os=info.os,
        new_session=new_session,
    )
