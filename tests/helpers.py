import asyncio
import socket


def free_tcp_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class DatagramCollector(asyncio.DatagramProtocol):
    """Loopback UDP endpoint that queues everything it receives."""

    def __init__(self):
        self.queue = asyncio.Queue()
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.queue.put_nowait((data.decode("utf-8"), addr))

    @property
    def addr(self):
        return self.transport.get_extra_info("sockname")


async def open_collector() -> DatagramCollector:
    loop = asyncio.get_running_loop()
    _, collector = await loop.create_datagram_endpoint(
        DatagramCollector, local_addr=("127.0.0.1", 0)
    )
    return collector
