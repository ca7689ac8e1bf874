"""Built-in tools: get_current_datetime and read_webpage.

read_webpage uses its own httpx client, never the provider's (that one
carries API credentials).  Every URL, including each redirect hop, is
resolved and checked against private address ranges before it is
fetched.
"""

from __future__ import annotations

import asyncio
import html as html_module
import ipaddress
import logging
import re
import socket
from datetime import datetime
from typing import Any
from urllib.parse import urljoin, urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from turnstile.api.tools import ToolRegistry
from turnstile.config import Settings
from turnstile.exceptions import ToolExecutionError

logger = logging.getLogger(__name__)

# Hard ceiling regardless of what the model asks for
MAX_FETCH_CHARS = 50000
MAX_REDIRECTS = 5
_REDIRECT_STATUSES = (301, 302, 303, 307, 308)
_TEXT_CONTENT_TYPES = ("text/", "application/json", "application/xml", "application/xhtml")

_BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),          # "This" network
    ipaddress.ip_network("127.0.0.0/8"),        # Loopback
    ipaddress.ip_network("10.0.0.0/8"),         # RFC1918
    ipaddress.ip_network("172.16.0.0/12"),      # RFC1918
    ipaddress.ip_network("192.168.0.0/16"),     # RFC1918
    ipaddress.ip_network("169.254.0.0/16"),     # Link-local / cloud metadata
    ipaddress.ip_network("100.64.0.0/10"),      # Carrier-grade NAT
    ipaddress.ip_network("::1/128"),            # IPv6 loopback
    ipaddress.ip_network("fc00::/7"),           # IPv6 unique local
    ipaddress.ip_network("fe80::/10"),          # IPv6 link-local
]

_BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "metadata.google.internal"}


# ---------------------------------------------------------------------------
# get_current_datetime
# ---------------------------------------------------------------------------


def get_current_datetime(timezone: str = "UTC") -> dict[str, Any]:
    """Current date and time in an IANA timezone."""
    try:
        tz = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ToolExecutionError(f"Unknown timezone: {timezone}") from e

    now = datetime.now(tz)
    return {
        "iso": now.isoformat(),
        "timezone": timezone,
        "unix": int(now.timestamp()),
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M:%S"),
        "weekday": now.strftime("%A"),
        "utc_offset": now.strftime("%z"),
    }


# ---------------------------------------------------------------------------
# read_webpage
# ---------------------------------------------------------------------------


async def _resolve(hostname: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None)
    return [info[4][0] for info in infos]


async def check_url(url: str) -> None:
    """Raise ToolExecutionError unless url is http(s) to a public address."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ToolExecutionError("URL must start with http:// or https://")

    hostname = parsed.hostname
    if not hostname:
        raise ToolExecutionError("Could not parse hostname from URL")
    if hostname.lower() in _BLOCKED_HOSTNAMES:
        raise ToolExecutionError(f"Blocked hostname: {hostname}")

    try:
        addresses = await _resolve(hostname)
    except socket.gaierror as e:
        raise ToolExecutionError(f"Could not resolve hostname: {hostname}") from e

    for address in addresses:
        # Strip IPv6 zone ids (fe80::1%eth0)
        ip = ipaddress.ip_address(address.split("%", 1)[0])
        for network in _BLOCKED_NETWORKS:
            if ip in network:
                raise ToolExecutionError(f"URL resolves to blocked IP range ({network})")


def extract_readable(html: str) -> str:
    """Extract readable text from HTML."""
    text = re.sub(
        r"<(script|style|noscript|nav|header|footer|svg)[^>]*>.*?</\1>",
        "", html, flags=re.DOTALL | re.IGNORECASE,
    )
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)
    # Keep block boundaries as line breaks
    text = re.sub(r"<(br|/p|/div|/li|/h[1-6]|/tr)[^>]*>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html_module.unescape(text)
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r"\s*\n\s*", "\n", text)
    return text.strip()


def _title(html: str) -> str:
    match = re.search(r"<title[^>]*>(.*?)</title>", html, flags=re.DOTALL | re.IGNORECASE)
    return html_module.unescape(match.group(1)).strip() if match else ""


async def read_webpage(
    url: str,
    max_chars: int | None = None,
    *,
    settings: Settings,
    http: httpx.AsyncClient,
) -> dict[str, Any]:
    """Fetch a URL and return its readable text."""
    await check_url(url)
    limit = min(max_chars or settings.web_fetch_max_chars, MAX_FETCH_CHARS)

    # Redirects followed by hand so every hop gets the address check
    current_url = url
    for _ in range(MAX_REDIRECTS + 1):
        try:
            response = await http.get(
                current_url,
                headers={"User-Agent": "turnstile/0.1 (+read_webpage)"},
                follow_redirects=False,
            )
        except httpx.TimeoutException as e:
            raise ToolExecutionError(f"Fetch timed out for: {current_url}") from e
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Could not fetch {current_url}: {e}") from e

        if response.status_code not in _REDIRECT_STATUSES:
            break
        location = response.headers.get("location", "")
        if not location:
            break
        next_url = urljoin(current_url, location)
        try:
            await check_url(next_url)
        except ToolExecutionError as e:
            raise ToolExecutionError(f"Blocked redirect to unsafe URL: {e}") from e
        logger.debug("read_webpage redirect %s -> %s", current_url, next_url)
        current_url = next_url
    else:
        raise ToolExecutionError(f"Too many redirects (max {MAX_REDIRECTS})")

    if response.status_code >= 400:
        raise ToolExecutionError(f"Fetch failed for {current_url} (HTTP {response.status_code})")

    content_type = response.headers.get("content-type", "").lower()
    if content_type and not any(t in content_type for t in _TEXT_CONTENT_TYPES):
        raise ToolExecutionError(
            f"Cannot extract text from binary content (content-type: {content_type})"
        )

    title = ""
    if "html" in content_type:
        title = _title(response.text)
        text = extract_readable(response.text)
    else:
        text = response.text

    truncated = len(text) > limit
    if truncated:
        text = text[:limit]

    logger.info("read_webpage %s: %d chars (truncated=%s)", current_url, len(text), truncated)
    return {
        "url": current_url,
        "title": title,
        "content": text,
        "truncated": truncated,
    }


# ---------------------------------------------------------------------------
# Schemas and registration
# ---------------------------------------------------------------------------


_DATETIME_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Get the current date and time, optionally in a specific timezone.",
    "properties": {
        "timezone": {
            "type": "string",
            "description": "IANA timezone name, e.g. 'Europe/Paris' (default UTC)",
            "default": "UTC",
        },
    },
}

_READ_WEBPAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Fetch a webpage and return its readable text content.",
    "properties": {
        "url": {"type": "string", "description": "URL to fetch (must be http or https)"},
        "max_chars": {
            "type": "integer",
            "description": f"Maximum characters to return (default from config, max {MAX_FETCH_CHARS})",
            "minimum": 1,
            "maximum": MAX_FETCH_CHARS,
        },
    },
    "required": ["url"],
}


def register_builtin_tools(
    registry: ToolRegistry,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> None:
    """Register get_current_datetime and read_webpage.

    http_client must not carry provider credentials.
    """

    async def _read(url: str, max_chars: int | None = None) -> dict[str, Any]:
        return await read_webpage(url, max_chars, settings=settings, http=http_client)

    registry.register("get_current_datetime", get_current_datetime, _DATETIME_SCHEMA)
    registry.register("read_webpage", _read, _READ_WEBPAGE_SCHEMA)
