#!/usr/bin/env python3
"""
SSDP Responder - advertise a single virtual UPnP device on the local network.

Answers SSDP M-SEARCH queries for the device, multicasts NOTIFY ssdp:alive
every 30 seconds and serves the device description XML over HTTP.

Usage:
    python ssdp_responder.py mydevice.local
    python ssdp_responder.py -h mydevice.local -p 8080 -n "My Device"
    python ssdp_responder.py --config config.yaml

    Or with environment variables:
    SSDP_HOSTNAME=mydevice.local SSDP_HTTP_PORT=8080 python ssdp_responder.py
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import random
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml

from description_server import run_description_server
from device_profile import (
    DEFAULT_DEVICE_TYPE,
    DEFAULT_HTTP_PORT,
    SSDP_MCAST_GRP,
    SSDP_MCAST_PORT,
    DeviceProfile,
    build_profile,
    get_advertise_ip,
)
from ssdp_discovery import (
    DEFAULT_MULTICAST_TTL,
    NOTIFY_INTERVAL,
    DiscoveryError,
    NotifyAnnouncer,
    SSDPListenerProtocol,
    run_discovery_listener,
)

# -----------------------------------------------------------------------------
# Logging setup
# -----------------------------------------------------------------------------

def setup_logging(level: str = "INFO") -> None:
    """Configure logging format and level."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

DEFAULTS = {
    "hostname": "",
    "http_port": DEFAULT_HTTP_PORT,
    "friendly_name": "",
    "manufacturer": "Unknown",
    "model_name": "Unknown",
    "device_type": DEFAULT_DEVICE_TYPE,
    "advertise_ip": "",
    "log_level": "INFO",
    "notify_interval": NOTIFY_INTERVAL,
    "multicast_ttl": DEFAULT_MULTICAST_TTL,
    "max_pending_responses": 0,  # 0 = unbounded
}


def load_config(config_path: Optional[Path] = None) -> dict:
    """Load configuration from YAML file with environment overrides."""
    config = DEFAULTS.copy()

    # Explicit path must exist; config.yaml in the project dir is optional
    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f"Config not found: {config_path}")
        path: Optional[Path] = config_path
    else:
        path = Path(__file__).parent / "config.yaml"
        if not path.exists():
            path = None
    if path:
        with open(path) as f:
            config.update(yaml.safe_load(f) or {})

    # Environment overrides
    if os.getenv("SSDP_HOSTNAME"):
        config["hostname"] = os.getenv("SSDP_HOSTNAME")
    if os.getenv("SSDP_HTTP_PORT"):
        config["http_port"] = os.getenv("SSDP_HTTP_PORT")
    if os.getenv("SSDP_ADVERTISE_IP"):
        config["advertise_ip"] = os.getenv("SSDP_ADVERTISE_IP")
    if os.getenv("LOG_LEVEL"):
        config["log_level"] = os.getenv("LOG_LEVEL")

    return config


def _port(value) -> int:
    """argparse type for a TCP port number."""
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise argparse.ArgumentTypeError(f"invalid port number: {value!r}")
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range (1-65535): {port}")
    return port


def _positive_float(value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise argparse.ArgumentTypeError(f"not a number: {value!r}")
    if not number > 0:
        raise argparse.ArgumentTypeError(f"must be greater than 0: {value!r}")
    return number


def _int_in_range(value, low: int, high: Optional[int] = None) -> int:
    if isinstance(value, bool):
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if number < low or (high is not None and number > high):
        bound = f"{low}-{high}" if high is not None else f">= {low}"
        raise argparse.ArgumentTypeError(f"out of range ({bound}): {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ssdp-responder",
        description="SSDP Responder - advertise a UPnP device via SSDP",
        epilog='Example: ssdp-responder -h mydevice.local -p 8080 -n "My Device"',
        add_help=False,
    )
    parser.add_argument("hostname_arg", nargs="?", metavar="HOSTNAME", help="Hostname to advertise")
    parser.add_argument("-h", "--hostname", help="Hostname to advertise (required)")
    parser.add_argument(
        "-p", "--port", type=_port, default=None,
        help=f"HTTP port for description.xml (default: {DEFAULT_HTTP_PORT})",
    )
    parser.add_argument("-n", "--name", help="Friendly device name (default: hostname)")
    parser.add_argument("-m", "--manufacturer", help="Manufacturer name (default: Unknown)")
    parser.add_argument("--model", help="Model name (default: Unknown)")
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to config YAML (default: config.yaml in project dir, if present)",
    )
    parser.add_argument("--advertise-ip", help="IP address to advertise in LOCATION")
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    parser.add_argument("--help", action="help", help="Show this help and exit")
    return parser


def resolve_config(parser: argparse.ArgumentParser, args: argparse.Namespace) -> dict:
    """
    Merge defaults, YAML file, environment and command line into one config.

    Exits via parser.error() if the hostname is missing or a numeric
    setting (port, notify_interval, multicast_ttl, max_pending_responses)
    is invalid.
    """
    try:
        config = load_config(args.config)
    except (FileNotFoundError, yaml.YAMLError) as e:
        print(str(e), file=sys.stderr)
        raise SystemExit(1)

    overrides = {
        "hostname": args.hostname or args.hostname_arg,
        "http_port": args.port,
        "friendly_name": args.name,
        "manufacturer": args.manufacturer,
        "model_name": args.model,
        "advertise_ip": args.advertise_ip,
        "log_level": args.log_level,
    }
    config.update({k: v for k, v in overrides.items() if v is not None})

    checks = {
        "http_port": _port,
        "notify_interval": _positive_float,
        "multicast_ttl": lambda v: _int_in_range(v, 1, 255),
        "max_pending_responses": lambda v: _int_in_range(v, 0),
    }
    for key, check in checks.items():
        try:
            config[key] = check(config[key])
        except argparse.ArgumentTypeError as e:
            parser.error(f"{key}: {e}")
    if not str(config.get("hostname") or "").strip():
        parser.error("hostname is required")
    return config


# -----------------------------------------------------------------------------
# Supervisor
# -----------------------------------------------------------------------------

class SSDPResponder:
    """
    Runs the SSDP listener, the NOTIFY announcer and the description server
    side by side, all sharing one read-only DeviceProfile.
    """

    def __init__(
        self,
        profile: DeviceProfile,
        logger: logging.Logger,
        config: Optional[dict] = None,
        ssdp_addr: tuple = ("0.0.0.0", SSDP_MCAST_PORT),
        join_group: bool = True,
        notify_target: tuple = (SSDP_MCAST_GRP, SSDP_MCAST_PORT),
        http_host: str = "0.0.0.0",
        rng: Optional[random.Random] = None,
    ) -> None:
        self.profile = profile
        self.logger = logger
        self.config = config or {}
        self.ssdp_addr = ssdp_addr
        self.join_group = join_group
        self.notify_target = notify_target
        self.http_host = http_host
        self.rng = rng
        self.ssdp_transport: Optional[asyncio.DatagramTransport] = None
        self.ssdp_protocol: Optional[SSDPListenerProtocol] = None
        self.http_server: Optional[asyncio.Server] = None
        self.announcer: Optional[NotifyAnnouncer] = None
        self._announce_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """
        Start all three activities.

        Raises DiscoveryError (SSDP bind/join), OSError (HTTP bind) or
        ValueError (bad numeric setting); nothing is left running in that case.
        """
        p = self.profile
        max_pending = int(self.config.get("max_pending_responses") or 0)
        interval = float(self.config.get("notify_interval", NOTIFY_INTERVAL))
        ttl = int(self.config.get("multicast_ttl", DEFAULT_MULTICAST_TTL))

        self.logger.info("SSDP advertising hostname: %s", p.hostname)
        self.logger.info("Local IP: %s", p.local_address)
        self.logger.info("Device UUID: %s", p.uuid)

        try:
            self.ssdp_transport, self.ssdp_protocol = await run_discovery_listener(
                p,
                self.logger,
                host=self.ssdp_addr[0],
                port=self.ssdp_addr[1],
                join_group=self.join_group,
                rng=self.rng,
                max_pending=max_pending,
            )
            self.http_server = await run_description_server(p, self.logger, host=self.http_host)
            announcer = NotifyAnnouncer(
                p,
                self.logger,
                interval=interval,
                target=self.notify_target,
                ttl=ttl,
            )
            await announcer.open()
        except Exception:
            await self.stop()
            raise

        self.announcer = announcer
        self._announce_task = asyncio.create_task(self.announcer.run())

    @property
    def ssdp_port(self) -> Optional[int]:
        """Port the SSDP listener is bound to (useful when bound to port 0)."""
        if not self.ssdp_transport:
            return None
        return self.ssdp_transport.get_extra_info("sockname")[1]

    async def stop(self) -> None:
        """Stop all activities; safe to call more than once."""
        if self._announce_task:
            self._announce_task.cancel()
            try:
                await self._announce_task
            except asyncio.CancelledError:
                pass
            self._announce_task = None
        if self.ssdp_transport:
            self.ssdp_transport.close()
            self.ssdp_transport = None
        if self.http_server:
            self.http_server.close()
            await self.http_server.wait_closed()
            self.http_server = None
        self.logger.info("SSDP responder stopped")


# -----------------------------------------------------------------------------
# Main entry point
# -----------------------------------------------------------------------------

async def main_async(config: dict) -> int:
    """Run the responder until SIGINT/SIGTERM."""
    logger = logging.getLogger("ssdp-responder")

    local_ip = get_advertise_ip(config)
    if not local_ip:
        logger.error("Could not determine local IP address. Set advertise_ip in config.")
        return 1

    profile = build_profile(config, local_ip)
    responder = SSDPResponder(profile, logger, config)

    # Handle shutdown gracefully - must not block event loop or Ctrl-C won't work
    stop_event = asyncio.Event()
    _shutting_down = False

    def shutdown():
        nonlocal _shutting_down
        if _shutting_down:
            logger.warning("Second Ctrl-C: forcing exit")
            os._exit(1)
        _shutting_down = True
        stop_event.set()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown)
    except (NotImplementedError, OSError):
        # add_signal_handler not supported on Windows - use signal.signal
        try:
            signal.signal(signal.SIGINT, lambda s, f: shutdown())
            signal.signal(signal.SIGTERM, lambda s, f: shutdown())
        except (ValueError, OSError):
            pass

    logger.info("Starting SSDP Responder...")
    try:
        await responder.start()
    except DiscoveryError as e:
        logger.error("%s", e)
        return 1
    except OSError as e:
        logger.error("HTTP port %d unavailable: %s", profile.http_port, e)
        return 1
    except ValueError as e:
        logger.error("Invalid setting: %s", e)
        return 1

    await stop_event.wait()

    logger.info("Shutting down...")
    try:
        await asyncio.wait_for(responder.stop(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Shutdown timed out, exiting anyway")
    return 0


def main(argv: Optional[list] = None) -> int:
    """Parse arguments and run the responder."""
    parser = build_parser()
    args = parser.parse_args(argv)
    config = resolve_config(parser, args)
    setup_logging(config["log_level"])

    try:
        return asyncio.run(main_async(config))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
