from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from heimdall.logging import get_logger
from heimdall.storage.common import call_store
from heimdall.storage.models import LoginLog

logger = get_logger(__name__)


class AuditAppender(Protocol):
    def append_login_log(self, log: LoginLog) -> None: ...


@dataclass(frozen=True)
class DeviceInfo:
    device_type: str
    browser: str
    os: str


# Ordered: more specific tokens must win over generic ones (Edge ships "Chrome").
_BROWSERS = (
    ("Edg/", "Edge"),
    ("OPR/", "Opera"),
    ("Firefox/", "Firefox"),
    ("Chrome/", "Chrome"),
    ("Safari/", "Safari"),
    ("curl/", "curl"),
)
_SYSTEMS = (
    ("Windows", "Windows"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Mac OS X", "macOS"),
    ("Linux", "Linux"),
)


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    ua = user_agent or ""
    browser = next((name for token, name in _BROWSERS if token in ua), "Unknown")
    system = next((name for token, name in _SYSTEMS if token in ua), "Unknown")
    if "iPad" in ua or "Tablet" in ua:
        device = "tablet"
    elif "Mobile" in ua or "Android" in ua or "iPhone" in ua:
        device = "mobile"
    elif ua:
        device = "desktop"
    else:
        device = "unknown"
    return DeviceInfo(device_type=device, browser=browser, os=system)


class AuditRecorder:
    """Appends login audit records without ever failing the request."""

    def __init__(self, appender: AuditAppender, *, timeout: float = 10.0) -> None:
        self.appender = appender
        self.timeout = timeout

    async def record(self, log: LoginLog) -> None:
        if log.device_type is None:
            device = parse_user_agent(log.user_agent)
            log.device_type = device.device_type
            log.browser = device.browser
            log.os = device.os
        try:
            await call_store(self.appender.append_login_log, log, timeout=self.timeout)
        except Exception as exc:
            logger.warning(
                "login_audit_append_failed",
                username=log.username,
                status=log.status,
                error=str(exc),
            )
