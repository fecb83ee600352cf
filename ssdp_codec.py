"""
SSDP message codec - builds and parses the wire messages.

Pure string transforms, no I/O:
  - description.xml for the HTTP endpoint
  - HTTP/1.1 200 OK search responses (sent over UDP, not HTTP)
  - NOTIFY ssdp:alive / ssdp:byebye announcements
  - M-SEARCH request parsing
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from device_profile import SSDP_MCAST_GRP, SSDP_MCAST_PORT, DeviceProfile

__version__ = "1.0"

SERVER_NAME = f"UPnP/1.1 SsdpResponder/{__version__}"
CACHE_MAX_AGE = 1800

DEFAULT_MX = 3
MAX_DELAY_MS = 5000

ST_ALL = "ssdp:all"
ST_ROOTDEVICE = "upnp:rootdevice"


@dataclass(frozen=True)
class SearchRequest:
    """Result of parsing one inbound datagram."""

    valid: bool = False
    search_target: str = ""
    mx: int = DEFAULT_MX


# -----------------------------------------------------------------------------
# XML builders
# -----------------------------------------------------------------------------


def _escape_xml_text(s: str) -> str:
    """Escape &, <, >, " for use in XML element text."""
    return (
        str(s)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def description_xml(profile: DeviceProfile) -> str:
    """UPnP device description served at / and /description.xml."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<root xmlns="urn:schemas-upnp-org:device-1-0">
  <specVersion>
    <major>1</major>
    <minor>0</minor>
  </specVersion>
  <device>
    <deviceType>{_escape_xml_text(profile.identity)}</deviceType>
    <friendlyName>{_escape_xml_text(profile.friendly_name)}</friendlyName>
    <manufacturer>{_escape_xml_text(profile.manufacturer)}</manufacturer>
    <modelName>{_escape_xml_text(profile.model_name)}</modelName>
    <UDN>{_escape_xml_text(profile.hostname)}</UDN>
  </device>
</root>"""


# -----------------------------------------------------------------------------
# SSDP messages
# -----------------------------------------------------------------------------


def search_response(profile: DeviceProfile, search_target: str) -> str:
    """Build SSDP HTTP 200 response for M-SEARCH."""
    return "\r\n".join([
        "HTTP/1.1 200 OK",
        f"CACHE-CONTROL: max-age={CACHE_MAX_AGE}",
        "EXT:",
        f"ST: {search_target}",
        f"USN: {profile.usn(search_target)}",
        f"SERVER: {SERVER_NAME}",
        f"LOCATION: {profile.location}",
        "", "",
    ])


def notify_alive(profile: DeviceProfile) -> str:
    """Build the periodic NOTIFY ssdp:alive announcement."""
    return "\r\n".join([
        "NOTIFY * HTTP/1.1",
        f"HOST: {SSDP_MCAST_GRP}:{SSDP_MCAST_PORT}",
        f"CACHE-CONTROL: max-age={CACHE_MAX_AGE}",
        f"LOCATION: {profile.location}",
        f"NT: {profile.device_type}",
        "NTS: ssdp:alive",
        f"SERVER: {SERVER_NAME}",
        f"USN: {profile.usn(profile.device_type)}",
        "", "",
    ])


def notify_byebye(profile: DeviceProfile) -> str:
    """Build the NOTIFY ssdp:byebye sent once on graceful shutdown."""
    return "\r\n".join([
        "NOTIFY * HTTP/1.1",
        f"HOST: {SSDP_MCAST_GRP}:{SSDP_MCAST_PORT}",
        f"NT: {profile.device_type}",
        "NTS: ssdp:byebye",
        f"USN: {profile.usn(profile.device_type)}",
        "", "",
    ])


def _ascii_upper(s: str) -> str:
    """Upper-case ASCII letters only; non-ASCII characters never match."""
    return s.encode("ascii", "replace").upper().decode("ascii")


def parse_msearch(data: Union[bytes, str]) -> SearchRequest:
    """
    Parse an M-SEARCH request.

    The first line must start with "M-SEARCH " (case-insensitive, trailing
    space required). ST and MX headers are read case-insensitively, the last
    occurrence wins. An unparsable MX falls back to the default of 3. Never raises:
    anything else yields SearchRequest(valid=False).
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="ignore")

    lines = data.split("\r\n")
    if _ascii_upper(lines[0][:9]) != "M-SEARCH ":
        return SearchRequest()

    st = ""
    mx = DEFAULT_MX
    for line in lines[1:]:
        colon = line.find(":")
        if colon <= 0:
            continue
        key = _ascii_upper(line[:colon].strip())
        value = line[colon + 1:].strip()
        if key == "ST":
            st = value
        elif key == "MX":
            try:
                mx = int(value)
            except ValueError:
                mx = DEFAULT_MX
    return SearchRequest(valid=True, search_target=st, mx=mx)


def matches_search_target(profile: DeviceProfile, search_target: str) -> bool:
    """True if this device answers for the given ST (exact match only)."""
    return search_target in (ST_ALL, ST_ROOTDEVICE, profile.identity)


def max_delay_ms(mx: int) -> int:
    """Upper bound of the random response delay: MX seconds, capped at 5s."""
    return max(0, min(mx * 1000, MAX_DELAY_MS))
