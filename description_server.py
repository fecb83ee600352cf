"""
HTTP device description server.

Serves the UPnP description document at / and /description.xml, the URL
advertised in SSDP LOCATION headers. Anything else is 404. Every response
closes the connection.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from device_profile import DESCRIPTION_PATH, DeviceProfile
from ssdp_codec import description_xml

CONTENT_TYPE_XML = "text/xml; charset=utf-8"

_REASONS = {
    200: "OK", 400: "Bad Request", 404: "Not Found", 405: "Method Not Allowed",
    500: "Internal Server Error",
}


class DescriptionHandler(asyncio.Protocol):
    """HTTP handler for a single client connection."""

    PATHS = ("/", DESCRIPTION_PATH)

    def __init__(self, profile: DeviceProfile, logger: logging.Logger) -> None:
        self.profile = profile
        self.logger = logger
        self.transport: Optional[asyncio.Transport] = None
        self._buffer = b""

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def data_received(self, data: bytes) -> None:
        self._buffer += data
        if b"\r\n\r\n" not in self._buffer:
            return

        peername = self.transport.get_extra_info("peername") if self.transport else None
        client_ip = peername[0] if peername else "?"

        try:
            req_line = self._buffer.decode("utf-8", errors="ignore").split("\r\n", 1)[0]
            parts = req_line.split()
            if len(parts) < 2:
                self.logger.debug("HTTP: malformed request line: %r", req_line[:100])
                self._send_body(400, b"Bad Request")
                return
            method, path = parts[0].upper(), parts[1].split("?")[0]
            self.logger.info("HTTP %s %s from %s", method, path, client_ip)

            if path not in self.PATHS:
                self._send_body(404, b"Not Found")
            elif method not in ("GET", "HEAD"):
                self._send_body(405, b"Method Not Allowed")
            else:
                body = description_xml(self.profile).encode("utf-8")
                self._send_body(200, body, CONTENT_TYPE_XML, head=method == "HEAD")
        except Exception as e:
            self.logger.warning("HTTP handler error: %s", e)
            self._send_body(500, b"Internal Server Error")

    def _send_body(
        self,
        status: int,
        body: bytes,
        content_type: str = "text/plain; charset=utf-8",
        head: bool = False,
    ) -> None:
        reason = _REASONS.get(status, "Error")
        resp = (
            f"HTTP/1.1 {status} {reason}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Connection: close\r\n\r\n"
        ).encode()
        if not head:
            resp += body
        if self.transport:
            self.transport.write(resp)
        self._close()

    def _close(self) -> None:
        if self.transport:
            self.transport.close()
            self.transport = None


async def run_description_server(
    profile: DeviceProfile,
    logger: logging.Logger,
    host: str = "0.0.0.0",
    port: Optional[int] = None,
) -> asyncio.Server:
    """
    Start the description HTTP server on profile.http_port (or port if given).

    Raises OSError if the port cannot be bound.
    """
    port = profile.http_port if port is None else port
    server = await asyncio.get_running_loop().create_server(
        lambda: DescriptionHandler(profile, logger),
        host,
        port,
        reuse_address=True,
    )
    logger.info("HTTP server on port %d", server.sockets[0].getsockname()[1])
    logger.info("Description URL: %s", profile.location)
    return server
