"""
Device profile - the one virtual UPnP device this responder advertises.

DeviceProfile is built once at startup from configuration, the discovered
local address and a freshly generated UUID. It is frozen and shared
read-only by the listener, the announcer and the description server.
"""

from __future__ import annotations

import socket
import uuid as uuid_mod
from dataclasses import dataclass
from typing import Optional

SSDP_MCAST_GRP = "239.255.255.250"
SSDP_MCAST_PORT = 1900

DEFAULT_HTTP_PORT = 49152
DEFAULT_DEVICE_TYPE = "urn:schemas-upnp-org:device:Basic:1"
DESCRIPTION_PATH = "/description.xml"


# -----------------------------------------------------------------------------
# Device Profile
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceProfile:
    """Identity and presentation fields of the advertised device."""

    hostname: str
    local_address: str
    http_port: int
    uuid: str
    device_type: str = DEFAULT_DEVICE_TYPE
    friendly_name: str = ""
    manufacturer: str = "Unknown"
    model_name: str = "Unknown"

    @property
    def identity(self) -> str:
        """Globally scoped identity string, e.g. uuid:1234...:urn:...:Basic:1."""
        return f"uuid:{self.uuid}:{self.device_type}"

    @property
    def location(self) -> str:
        """URL of the description document (LOCATION header)."""
        return f"http://{self.local_address}:{self.http_port}{DESCRIPTION_PATH}"

    def usn(self, target: str) -> str:
        """Unique Service Name for a search target or notification type."""
        return f"uuid:{self.uuid}::{target}"


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def get_advertise_ip(config: dict) -> Optional[str]:
    """Get the IP to advertise in SSDP LOCATION."""
    ip = (config.get("advertise_ip") or "").strip()
    if ip:
        return ip
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.settimeout(2.0)
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return None


def new_device_uuid() -> str:
    """Random 128-bit identifier in canonical UUID form."""
    return str(uuid_mod.uuid4())


def build_profile(config: dict, local_address: str, device_uuid: Optional[str] = None) -> DeviceProfile:
    """
    Build the DeviceProfile from validated configuration.

    friendly_name falls back to the hostname when unset or blank.
    """
    hostname = str(config["hostname"]).strip()
    friendly_name = str(config.get("friendly_name") or "").strip() or hostname
    return DeviceProfile(
        hostname=hostname,
        local_address=local_address,
        http_port=int(config.get("http_port", DEFAULT_HTTP_PORT)),
        uuid=device_uuid or new_device_uuid(),
        device_type=config.get("device_type") or DEFAULT_DEVICE_TYPE,
        friendly_name=friendly_name,
        manufacturer=config.get("manufacturer") or "Unknown",
        model_name=config.get("model_name") or "Unknown",
    )
