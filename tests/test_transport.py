"""
Tests for the TCP and UDP transports against loopback servers
"""

import asyncio
import socket
from time import perf_counter

import pytest

from gamestatpp.errors import QueryTimeoutError, SocketBusyError, WriteFailedError
from gamestatpp.transport import TcpTransport, UdpTransport

LOCALHOST = "127.0.0.1"


async def start_tcp_server(handler):
    server = await asyncio.start_server(handler, LOCALHOST, 0)
    port = server.sockets[0].getsockname()[1]
    return server, port


async def echo_handler(reader, writer):
    data = await reader.read(1024)
    writer.write(data)
    await writer.drain()
    writer.close()


async def delayed_echo_handler(reader, writer):
    data = await reader.read(1024)
    await asyncio.sleep(0.1)
    writer.write(data)
    await writer.drain()
    writer.close()


async def split_handler(reader, writer):
    await reader.read(1024)
    writer.write(b"ab")
    await writer.drain()
    await asyncio.sleep(0.05)
    writer.write(b"cd")
    await writer.drain()
    writer.close()


async def silent_handler(reader, writer):
    while await reader.read(1024):
        pass
    writer.close()


class UdpServer(asyncio.DatagramProtocol):
    """Loopback UDP server answering every datagram with `replies(data)`"""

    def __init__(self, replies=None, delay=0.0):
        self.replies = replies
        self.delay = delay
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        if self.replies is None:
            return
        loop = asyncio.get_running_loop()
        for i, reply in enumerate(self.replies(data)):
            loop.call_later(self.delay + i * 0.02, self.transport.sendto, reply, addr)


async def start_udp_server(replies=None, delay=0.0):
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: UdpServer(replies, delay), local_addr=(LOCALHOST, 0)
    )
    return transport, transport.get_extra_info("sockname")[1]


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LOCALHOST, 0))
        return sock.getsockname()[1]


class TestTcpTransport:
    """Test request/response over TCP"""

    def test_echo(self):
        async def main():
            server, port = await start_tcp_server(echo_handler)
            async with server:
                async with TcpTransport(LOCALHOST, port, timeout=2) as transport:
                    assert transport.latency is not None
                    return await transport.send(b"hello")

        assert asyncio.run(main()) == b"hello"

    def test_validator_accumulates_chunks(self):
        seen = []

        def validator(buffer):
            seen.append(buffer)
            return buffer if len(buffer) >= 4 else None

        async def main():
            server, port = await start_tcp_server(split_handler)
            async with server:
                async with TcpTransport(LOCALHOST, port, timeout=2) as transport:
                    return await transport.send(b"x", validator)

        assert asyncio.run(main()) == b"abcd"
        assert seen[0] == b"ab"
        assert seen[-1] == b"abcd"

    def test_first_chunk_without_validator(self):
        async def main():
            server, port = await start_tcp_server(split_handler)
            async with server:
                async with TcpTransport(LOCALHOST, port, timeout=2) as transport:
                    return await transport.send(b"x")

        assert asyncio.run(main()) == b"ab"

    def test_validator_error_rejects(self):
        def validator(buffer):
            raise ValueError("broken frame")

        async def main():
            server, port = await start_tcp_server(echo_handler)
            async with server:
                async with TcpTransport(LOCALHOST, port, timeout=2) as transport:
                    return await transport.send(b"x", validator)

        with pytest.raises(ValueError):
            asyncio.run(main())

    def test_timeout(self):
        async def main():
            server, port = await start_tcp_server(silent_handler)
            async with server:
                transport = TcpTransport(LOCALHOST, port, timeout=0.2)
                await transport.connect()
                start = perf_counter()
                try:
                    await transport.send(b"x", lambda buffer: None)
                except QueryTimeoutError as e:
                    return perf_counter() - start, e, transport.busy

        elapsed, error, busy = asyncio.run(main())
        assert elapsed >= 0.19
        assert str(error).startswith(f"TCP Timeout {LOCALHOST}:")
        assert not busy

    def test_close_leaves_request_to_timer(self):
        async def main():
            server, port = await start_tcp_server(silent_handler)
            async with server:
                transport = TcpTransport(LOCALHOST, port, timeout=0.3)
                await transport.connect()
                start = perf_counter()
                request = asyncio.create_task(transport.send(b"x", lambda buffer: None))
                await asyncio.sleep(0.05)
                transport.close()
                await asyncio.sleep(0.05)
                assert not request.done()
                with pytest.raises(QueryTimeoutError):
                    await request
                return perf_counter() - start

        assert asyncio.run(main()) >= 0.29

    def test_socket_busy(self):
        async def main():
            server, port = await start_tcp_server(delayed_echo_handler)
            async with server:
                async with TcpTransport(LOCALHOST, port, timeout=2) as transport:
                    first = asyncio.create_task(transport.send(b"first"))
                    await asyncio.sleep(0)
                    with pytest.raises(SocketBusyError):
                        await transport.send(b"second")
                    return await first

        assert asyncio.run(main()) == b"first"

    def test_write_without_connection(self):
        async def main():
            transport = TcpTransport(LOCALHOST, 1)
            await transport.send(b"x")

        with pytest.raises(WriteFailedError):
            asyncio.run(main())

    def test_connection_refused(self):
        async def main():
            transport = TcpTransport(LOCALHOST, free_port(), timeout=2)
            await transport.connect()

        with pytest.raises(OSError):
            asyncio.run(main())


class TestUdpTransport:
    """Test request/response over UDP"""

    def test_echo(self):
        async def main():
            server, port = await start_udp_server(lambda data: [data])
            try:
                async with UdpTransport() as transport:
                    return await transport.send(b"ping", port, LOCALHOST, 2)
            finally:
                server.close()

        assert asyncio.run(main()) == b"ping"

    def test_validator_accumulates_datagrams(self):
        def validator(chunk, chunks):
            return b"".join(chunks) if len(chunks) == 2 else None

        async def main():
            server, port = await start_udp_server(lambda data: [b"one-", b"two"])
            try:
                async with UdpTransport() as transport:
                    return await transport.send(b"x", port, LOCALHOST, 2, validator)
            finally:
                server.close()

        assert asyncio.run(main()) == b"one-two"

    def test_timeout_not_before_deadline(self):
        async def main():
            server, port = await start_udp_server()
            try:
                async with UdpTransport() as transport:
                    start = perf_counter()
                    try:
                        await transport.send(b"x", port, LOCALHOST, 0.2)
                    except QueryTimeoutError as e:
                        return perf_counter() - start, str(e)
            finally:
                server.close()

        elapsed, message = asyncio.run(main())
        assert elapsed >= 0.19
        assert message.startswith(f"Timeout waiting for response from {LOCALHOST}:")

    def test_socket_busy_first_completes(self):
        async def main():
            server, port = await start_udp_server(lambda data: [data], delay=0.1)
            try:
                async with UdpTransport() as transport:
                    first = asyncio.create_task(transport.send(b"first", port, LOCALHOST, 2))
                    await asyncio.sleep(0)
                    with pytest.raises(SocketBusyError):
                        await transport.send(b"second", port, LOCALHOST, 2)
                    return await first
            finally:
                server.close()

        assert asyncio.run(main()) == b"first"

    def test_reusable_after_timeout(self):
        answers = iter([[], [b"late"]])

        async def main():
            server, port = await start_udp_server(lambda data: next(answers))
            try:
                async with UdpTransport() as transport:
                    with pytest.raises(QueryTimeoutError):
                        await transport.send(b"x", port, LOCALHOST, 0.1)
                    return await transport.send(b"y", port, LOCALHOST, 2)
            finally:
                server.close()

        assert asyncio.run(main()) == b"late"

    def test_close_leaves_request_to_timer(self):
        async def main():
            server, port = await start_udp_server()
            try:
                transport = UdpTransport()
                start = perf_counter()
                request = asyncio.create_task(transport.send(b"x", port, LOCALHOST, 0.3))
                await asyncio.sleep(0.05)
                transport.close()
                await asyncio.sleep(0.05)
                assert not request.done()
                assert transport.busy
                with pytest.raises(QueryTimeoutError):
                    await request
                return perf_counter() - start, transport.busy
            finally:
                server.close()

        elapsed, busy = asyncio.run(main())
        assert elapsed >= 0.29
        assert not busy
