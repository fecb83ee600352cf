import asyncio
import random
import socket
from unittest.mock import Mock

import pytest
import pytest_asyncio

from helpers import open_collector
from ssdp_discovery import (
    DiscoveryError,
    NotifyAnnouncer,
    SSDPListenerProtocol,
    open_discovery_socket,
    run_discovery_listener,
)


def zero_rng():
    rng = Mock(spec=random.Random)
    rng.randint.return_value = 0
    return rng


def msearch(st, mx=1):
    return f'M-SEARCH * HTTP/1.1\r\nHOST: 239.255.255.250:1900\r\nMAN: "ssdp:discover"\r\nST: {st}\r\nMX: {mx}\r\n\r\n'.encode()


@pytest_asyncio.fixture
async def listener(profile, logger):
    transport, protocol = await run_discovery_listener(
        profile, logger, host="127.0.0.1", port=0, join_group=False, rng=zero_rng(),
    )
    yield transport, protocol
    transport.close()


def listener_addr(transport):
    return ("127.0.0.1", transport.get_extra_info("sockname")[1])


# -----------------------------------------------------------------------------
# Listener
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_responds_to_rootdevice_search(listener, profile):
    transport, _ = listener
    client = await open_collector()
    try:
        client.transport.sendto(msearch("upnp:rootdevice"), listener_addr(transport))
        data, _ = await asyncio.wait_for(client.queue.get(), timeout=1.0)
    finally:
        client.transport.close()

    assert data.startswith("HTTP/1.1 200 OK\r\n")
    assert "ST: upnp:rootdevice\r\n" in data
    assert f"USN: uuid:{profile.uuid}::upnp:rootdevice\r\n" in data


@pytest.mark.asyncio
async def test_responds_to_device_identity(listener, profile):
    transport, _ = listener
    client = await open_collector()
    try:
        client.transport.sendto(msearch(profile.identity), listener_addr(transport))
        data, _ = await asyncio.wait_for(client.queue.get(), timeout=1.0)
    finally:
        client.transport.close()

    assert f"ST: {profile.identity}\r\n" in data


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    msearch("urn:something-else"),
    msearch("urn:schemas-upnp-org:device:Basic:1"),
    b"NOTIFY * HTTP/1.1\r\nNT: upnp:rootdevice\r\nNTS: ssdp:alive\r\n\r\n",
    b"\x00\x01\x02garbage",
])
async def test_no_response_for_unserved_or_invalid(listener, payload):
    transport, protocol = listener
    client = await open_collector()
    try:
        client.transport.sendto(payload, listener_addr(transport))
        await asyncio.sleep(0.3)
        assert client.queue.empty()
        assert protocol.pending == 0
    finally:
        client.transport.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("mx,bound", [(2, 2000), (10, 5000), ("abc", 3000)])
async def test_delay_drawn_from_clamped_range(profile, logger, mx, bound):
    rng = zero_rng()
    protocol = SSDPListenerProtocol(profile, logger, rng=rng)
    protocol.datagram_received(msearch("ssdp:all", mx), ("127.0.0.1", 9))
    rng.randint.assert_called_once_with(0, bound)
    tasks = list(protocol._pending)
    protocol.cancel_pending()
    await asyncio.gather(*tasks, return_exceptions=True)


@pytest.mark.asyncio
async def test_pending_delay_does_not_block_receive(profile, logger):
    rng = Mock(spec=random.Random)
    rng.randint.side_effect = [5000, 0]
    transport, protocol = await run_discovery_listener(
        profile, logger, host="127.0.0.1", port=0, join_group=False, rng=rng,
    )
    client = await open_collector()
    try:
        client.transport.sendto(msearch("ssdp:all", 5), listener_addr(transport))
        await asyncio.sleep(0.05)
        client.transport.sendto(msearch("upnp:rootdevice", 1), listener_addr(transport))
        data, _ = await asyncio.wait_for(client.queue.get(), timeout=1.0)
        assert "ST: upnp:rootdevice\r\n" in data
        assert protocol.pending == 1
    finally:
        client.transport.close()
        transport.close()
    await asyncio.sleep(0.05)
    assert protocol.pending == 0


@pytest.mark.asyncio
async def test_max_pending_drops_excess(profile, logger):
    rng = Mock(spec=random.Random)
    rng.randint.return_value = 5000
    protocol = SSDPListenerProtocol(profile, logger, rng=rng, max_pending=2)
    for _ in range(4):
        protocol.datagram_received(msearch("ssdp:all", 5), ("127.0.0.1", 9))
    assert protocol.pending == 2
    tasks = list(protocol._pending)
    protocol.cancel_pending()
    await asyncio.gather(*tasks, return_exceptions=True)
    assert protocol.pending == 0


@pytest.mark.asyncio
async def test_handler_errors_are_not_fatal(profile, logger, monkeypatch):
    protocol = SSDPListenerProtocol(profile, logger, rng=zero_rng())

    def boom(_data):
        raise RuntimeError("bad packet")

    monkeypatch.setattr("ssdp_discovery.parse_msearch", boom)
    protocol.datagram_received(msearch("ssdp:all"), ("127.0.0.1", 9))
    assert protocol.pending == 0


@pytest.mark.asyncio
async def test_send_failure_is_logged_not_raised(profile, logger, monkeypatch):
    async def failing_send(payload, addr):
        raise OSError("network unreachable")

    monkeypatch.setattr("ssdp_discovery.send_datagram", failing_send)
    protocol = SSDPListenerProtocol(profile, logger, rng=zero_rng())
    protocol.datagram_received(msearch("ssdp:all"), ("127.0.0.1", 9))
    tasks = list(protocol._pending)
    await asyncio.gather(*tasks)
    assert protocol.pending == 0


def test_bind_failure_raises_discovery_error():
    # 192.0.2.0/24 is reserved for documentation, never a local address
    with pytest.raises(DiscoveryError):
        open_discovery_socket("192.0.2.1", 0, join_group=False)


# -----------------------------------------------------------------------------
# Announcer
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_first_announcement_is_immediate(profile, logger):
    collector = await open_collector()
    announcer = NotifyAnnouncer(profile, logger, interval=30.0, target=collector.addr)
    task = asyncio.create_task(announcer.run())
    try:
        data, _ = await asyncio.wait_for(collector.queue.get(), timeout=1.0)
        assert data.startswith("NOTIFY * HTTP/1.1\r\n")
        assert "NTS: ssdp:alive\r\n" in data
        assert "LOCATION: http://127.0.0.1:8080/description.xml\r\n" in data
        assert announcer.sent == 1
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
    data, _ = await asyncio.wait_for(collector.queue.get(), timeout=1.0)
    assert "NTS: ssdp:byebye\r\n" in data
    assert announcer.transport is None
    collector.transport.close()


@pytest.mark.asyncio
async def test_announces_repeatedly_at_interval(profile, logger):
    collector = await open_collector()
    announcer = NotifyAnnouncer(profile, logger, interval=0.05, target=collector.addr)
    task = asyncio.create_task(announcer.run())
    try:
        for _ in range(3):
            data, _ = await asyncio.wait_for(collector.queue.get(), timeout=1.0)
            assert "NTS: ssdp:alive\r\n" in data
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        collector.transport.close()


@pytest.mark.asyncio
async def test_send_failure_does_not_stop_announcer(profile, logger):
    sent = []

    def sendto(data, addr):
        sent.append(data)
        if len(sent) == 1:
            raise OSError("network unreachable")

    announcer = NotifyAnnouncer(profile, logger, interval=0.01, target=("127.0.0.1", 9))
    announcer.transport = Mock()
    announcer.transport.sendto.side_effect = sendto
    task = asyncio.create_task(announcer.run())
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(sent) >= 3
    assert announcer.sent == len(sent) - 2  # first failed, last is byebye
    assert b"ssdp:byebye" in sent[-1]


def test_join_failure_raises_and_closes_socket(monkeypatch):
    created = []
    real_socket = socket.socket

    def tracking_socket(*args, **kwargs):
        s = real_socket(*args, **kwargs)
        created.append(s)
        return s

    monkeypatch.setattr(socket, "socket", tracking_socket)
    # 127.0.0.1 is not a multicast group, so IP_ADD_MEMBERSHIP fails
    with pytest.raises(DiscoveryError, match="join multicast group"):
        open_discovery_socket("127.0.0.1", 0, group="127.0.0.1")
    assert len(created) == 1
    assert created[0].fileno() == -1


@pytest.mark.asyncio
async def test_max_pending_zero_is_unbounded(profile, logger):
    rng = Mock(spec=random.Random)
    rng.randint.return_value = 5000
    protocol = SSDPListenerProtocol(profile, logger, rng=rng, max_pending=0)
    for _ in range(5):
        protocol.datagram_received(msearch("ssdp:all", 5), ("127.0.0.1", 9))
    assert protocol.pending == 5
    tasks = list(protocol._pending)
    protocol.cancel_pending()
    await asyncio.gather(*tasks, return_exceptions=True)


@pytest.mark.parametrize("interval", [0, -1.0])
def test_announcer_rejects_non_positive_interval(profile, logger, interval):
    with pytest.raises(ValueError):
        NotifyAnnouncer(profile, logger, interval=interval)
