"""Extraction of structured facts from raw terminal output.

The helpers here are pure functions: they never touch the registry or any
session state, so they can be called on every streamed chunk. Each scanner
walks an ordered table of ``(pattern, validator)`` pairs and returns the first
candidate that passes its validator. Labelled patterns come before generic
ones so unrelated numbers in the stream are not mistaken for a guest id.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Callable, Iterator, Optional, Pattern, Sequence, Tuple

from .models import ServiceEndpoint

# CSI sequences (colours, cursor movement) and OSC sequences (window titles)
_ANSI_ESCAPE_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from terminal output."""

    if not text:
        return ""
    return _ANSI_ESCAPE_RE.sub("", text)


def _candidate_texts(text: str) -> Tuple[str, ...]:
    stripped = strip_ansi(text)
    if stripped == text:
        return (text,)
    return (stripped, text)


# ---------------------------------------------------------------------------
# Guest id
# ---------------------------------------------------------------------------

GuestIdValidator = Callable[[str], bool]


def _is_guest_id(candidate: str) -> bool:
    return candidate.isdigit() and 3 <= len(candidate) <= 4


def _guest_pattern(expression: str, flags: int = 0) -> Pattern[str]:
    return re.compile(expression, re.IGNORECASE | flags)


GUEST_ID_PATTERNS: Sequence[Tuple[Pattern[str], GuestIdValidator]] = (
    # Labelled output of the community helper scripts
    (_guest_pattern(r"🆔\s*Container\s*ID:\s*(\d+)"), _is_guest_id),
    (_guest_pattern(r"Container\s*ID\s*:\s*(\d+)"), _is_guest_id),
    (_guest_pattern(r"CT\s*ID\s*:\s*(\d+)"), _is_guest_id),
    (_guest_pattern(r"Container\s*created\s*with\s*ID\s*(\d+)"), _is_guest_id),
    (_guest_pattern(r"created\s*container\s*(\d+)"), _is_guest_id),
    (_guest_pattern(r"Container\s*#\s*(\d+)"), _is_guest_id),
    (_guest_pattern(r"CT\s*#\s*(\d+)"), _is_guest_id),
    (_guest_pattern(r"Container\s*(\d+)"), _is_guest_id),
    (_guest_pattern(r"\bCT\s*(\d+)"), _is_guest_id),
    (_guest_pattern(r"\bID:\s*(\d+)"), _is_guest_id),
    # Bare 3-4 digit token on its own; last resort
    (_guest_pattern(r"(?:^|\s)(\d{3,4})(?:\s|$)", re.MULTILINE), _is_guest_id),
)


def extract_guest_id(text: str) -> Optional[str]:
    """Return the first plausible guest id found in ``text``.

    The ANSI-stripped copy is scanned before the raw text so colour codes
    wrapped around a label never change the result.
    """

    if not text:
        return None

    for candidate_text in _candidate_texts(text):
        for pattern, validator in GUEST_ID_PATTERNS:
            match = pattern.search(candidate_text)
            if match is None:
                continue
            candidate = match.group(1)
            if candidate and validator(candidate):
                return candidate
    return None


# ---------------------------------------------------------------------------
# Service endpoint
# ---------------------------------------------------------------------------

_IPV4 = r"(?P<ip>\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})"

ENDPOINT_PATTERNS: Sequence[Pattern[str]] = (
    # http(s)://ip:port
    re.compile(rf"(?P<scheme>https?)://{_IPV4}:(?P<port>\d+)", re.IGNORECASE),
    # http(s)://ip followed by a path, whitespace or the end of the text
    re.compile(rf"(?P<scheme>https?)://{_IPV4}(?=/|\s|$)", re.IGNORECASE),
    # ip:port without a scheme
    re.compile(rf"(?<!\S){_IPV4}:(?P<port>\d+)(?!\S)"),
    # bare ip
    re.compile(rf"(?<!\S){_IPV4}(?!\S)"),
)


def _valid_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def _endpoint_from_match(match: "re.Match[str]") -> Optional[ServiceEndpoint]:
    groups = match.groupdict()
    ip = groups.get("ip")
    if not ip or not _valid_ipv4(ip):
        return None

    raw_port = groups.get("port")
    if raw_port:
        port = int(raw_port)
        if not 1 <= port <= 65535:
            return None
    else:
        scheme = (groups.get("scheme") or "").lower()
        port = 443 if scheme == "https" else 80

    return ServiceEndpoint(ip=ip, port=port)


def _iter_endpoints(text: str) -> Iterator[ServiceEndpoint]:
    for candidate_text in _candidate_texts(text):
        for pattern in ENDPOINT_PATTERNS:
            for match in pattern.finditer(candidate_text):
                endpoint = _endpoint_from_match(match)
                if endpoint is not None:
                    yield endpoint


def extract_service_endpoint(text: str) -> Optional[ServiceEndpoint]:
    """Return the first valid ``ip:port`` pair mentioned in ``text``.

    A missing port defaults to 443 for ``https`` URLs and 80 otherwise.
    """

    if not text:
        return None
    return next(_iter_endpoints(text), None)


__all__ = [
    "GUEST_ID_PATTERNS",
    "ENDPOINT_PATTERNS",
    "extract_guest_id",
    "extract_service_endpoint",
    "strip_ansi",
]
