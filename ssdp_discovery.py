"""
SSDP discovery - multicast listener for M-SEARCH and periodic NOTIFY announcer.

The listener joins 239.255.255.250:1900, answers searches for ssdp:all,
upnp:rootdevice and the device identity after a random delay bounded by MX,
and never blocks the receive path while responses are pending. The announcer
multicasts NOTIFY ssdp:alive immediately and then every 30 seconds.

Usage:
    from ssdp_discovery import NotifyAnnouncer, run_discovery_listener

    transport, protocol = await run_discovery_listener(profile, logger)
    announcer = NotifyAnnouncer(profile, logger)
    await announcer.open()
    task = asyncio.create_task(announcer.run())
"""

from __future__ import annotations

import asyncio
import logging
import random
import socket
import struct
from typing import Optional

from device_profile import SSDP_MCAST_GRP, SSDP_MCAST_PORT, DeviceProfile
from ssdp_codec import (
    matches_search_target,
    max_delay_ms,
    notify_alive,
    notify_byebye,
    parse_msearch,
    search_response,
)

NOTIFY_INTERVAL = 30.0
DEFAULT_MULTICAST_TTL = 2


class DiscoveryError(Exception):
    """The SSDP socket could not be bound or could not join the group."""


# -----------------------------------------------------------------------------
# Sockets
# -----------------------------------------------------------------------------


def open_discovery_socket(
    host: str = "0.0.0.0",
    port: int = SSDP_MCAST_PORT,
    group: str = SSDP_MCAST_GRP,
    join_group: bool = True,
) -> socket.socket:
    """Bind the SSDP UDP socket and join the multicast group."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        raise DiscoveryError(f"Could not bind UDP {host}:{port} (may need root): {e}") from e

    if join_group:
        mreq = struct.pack("=4sI", socket.inet_aton(group), socket.INADDR_ANY)
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        except OSError as e:
            sock.close()
            raise DiscoveryError(f"Could not join multicast group {group}: {e}") from e

    sock.setblocking(False)
    return sock


async def send_datagram(payload: bytes, addr: tuple) -> None:
    """Send one datagram from a socket opened for this send only."""
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(
        asyncio.DatagramProtocol,
        remote_addr=addr,
        family=socket.AF_INET,
    )
    try:
        transport.sendto(payload)
    finally:
        transport.close()


# -----------------------------------------------------------------------------
# SSDP Listener
# -----------------------------------------------------------------------------


class SSDPListenerProtocol(asyncio.DatagramProtocol):
    """Respond to SSDP M-SEARCH for the advertised device."""

    def __init__(
        self,
        profile: DeviceProfile,
        logger: logging.Logger,
        rng: Optional[random.Random] = None,
        max_pending: int = 0,
    ) -> None:
        self.profile = profile
        self.logger = logger
        self.rng = rng or random.Random()
        self.max_pending = max_pending
        self.transport: Optional[asyncio.DatagramTransport] = None
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of delayed responses still in flight."""
        return len(self._pending)

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        try:
            request = parse_msearch(data)
            if not request.valid:
                return
            st = request.search_target
            if not matches_search_target(self.profile, st):
                self.logger.debug("SSDP M-SEARCH from %s:%d ignored (ST=%s)", addr[0], addr[1], st[:80])
                return
            if self.max_pending > 0 and len(self._pending) >= self.max_pending:
                self.logger.debug(
                    "SSDP M-SEARCH from %s:%d dropped, %d responses pending",
                    addr[0], addr[1], len(self._pending),
                )
                return
            self.logger.info("SSDP M-SEARCH from %s:%d ST=%s", addr[0], addr[1], st)
            delay = self.rng.randint(0, max_delay_ms(request.mx)) / 1000.0
            task = asyncio.get_running_loop().create_task(self._respond(addr, st, delay))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        except Exception as e:
            self.logger.warning("SSDP error handling datagram from %s: %s", addr, e)

    async def _respond(self, addr: tuple, search_target: str, delay: float) -> None:
        """Wait out the jitter delay, then unicast the search response."""
        try:
            await asyncio.sleep(delay)
            response = search_response(self.profile, search_target)
            await send_datagram(response.encode("utf-8"), addr)
            self.logger.debug("SSDP response sent to %s:%d after %.3fs", addr[0], addr[1], delay)
        except Exception as e:
            self.logger.warning("SSDP response to %s:%d failed: %s", addr[0], addr[1], e)

    def error_received(self, exc: Exception) -> None:
        self.logger.warning("SSDP socket error: %s", exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            self.logger.warning("SSDP listener closed with error: %s", exc)
        self.cancel_pending()
        self.transport = None

    def cancel_pending(self) -> None:
        """Cancel delayed responses that have not been sent yet."""
        for task in list(self._pending):
            task.cancel()


async def run_discovery_listener(
    profile: DeviceProfile,
    logger: logging.Logger,
    host: str = "0.0.0.0",
    port: int = SSDP_MCAST_PORT,
    join_group: bool = True,
    rng: Optional[random.Random] = None,
    max_pending: int = 0,
) -> tuple[asyncio.DatagramTransport, SSDPListenerProtocol]:
    """
    Start the SSDP listener.

    Raises DiscoveryError if the socket cannot be bound or the group joined.
    """
    sock = open_discovery_socket(host, port, join_group=join_group)
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: SSDPListenerProtocol(profile, logger, rng=rng, max_pending=max_pending),
        sock=sock,
    )
    logger.info("SSDP listening on %s:%d", SSDP_MCAST_GRP if join_group else host, sock.getsockname()[1])
    return transport, protocol  # type: ignore[return-value]


# -----------------------------------------------------------------------------
# NOTIFY Announcer
# -----------------------------------------------------------------------------


class _AnnouncerProtocol(asyncio.DatagramProtocol):
    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def error_received(self, exc: Exception) -> None:
        self.logger.warning("SSDP error sending NOTIFY: %s", exc)


class NotifyAnnouncer:
    """
    Multicasts NOTIFY ssdp:alive at a fixed interval.

    The first announcement goes out as soon as run() starts. A failed send is
    logged and the loop waits for the next interval. When run() is cancelled
    a single ssdp:byebye is sent before the socket is closed.
    """

    def __init__(
        self,
        profile: DeviceProfile,
        logger: logging.Logger,
        interval: float = NOTIFY_INTERVAL,
        target: tuple = (SSDP_MCAST_GRP, SSDP_MCAST_PORT),
        ttl: int = DEFAULT_MULTICAST_TTL,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"notify_interval must be greater than 0: {interval}")
        self.profile = profile
        self.logger = logger
        self.interval = interval
        self.target = target
        self.ttl = ttl
        self.sent = 0
        self.transport: Optional[asyncio.DatagramTransport] = None

    async def open(self) -> None:
        """Create the sending socket."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self.ttl)
        sock.setblocking(False)
        loop = asyncio.get_running_loop()
        self.transport, _ = await loop.create_datagram_endpoint(
            lambda: _AnnouncerProtocol(self.logger),
            sock=sock,
        )

    def _send(self, message: str) -> bool:
        if not self.transport:
            return False
        try:
            self.transport.sendto(message.encode("utf-8"), self.target)
        except OSError as e:
            self.logger.warning("SSDP error sending NOTIFY: %s", e)
            return False
        return True

    def announce(self) -> bool:
        """Send one NOTIFY ssdp:alive. Returns False if the send failed."""
        if self._send(notify_alive(self.profile)):
            self.sent += 1
            self.logger.debug("SSDP NOTIFY alive sent to %s:%d", self.target[0], self.target[1])
            return True
        return False

    async def run(self) -> None:
        """Announce forever; cancel the task to stop."""
        if not self.transport:
            await self.open()
        try:
            while True:
                self.announce()
                await asyncio.sleep(self.interval)
        finally:
            self._send(notify_byebye(self.profile))
            self.close()

    def close(self) -> None:
        if self.transport:
            self.transport.close()
            self.transport = None
