# gamestatpp - Game server status probes
# Copyright (C) 2016-2023 Lloyd Dilley, Felix Ern (MindSolve)
# http://www.dilley.me/
#
# Secondary optimization and customization are carried out by @molanp.
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along
# with this program; if not, write to the Free Software Foundation, Inc.,
# 51 Franklin Street, Fifth Floor, Boston, MA 02110-1301 USA.
"""
asyncio TCP and UDP clients shared by all protocol clients.

Both transports allow a single outstanding request. `send()` arms a timer,
collects inbound data and hands it to an optional validator until the
validator returns a complete frame.
"""
import asyncio
import logging
import socket
from dataclasses import dataclass, field
from time import perf_counter
from typing import Callable, Optional

from .address import resolve_host
from .errors import (
    QueryTimeoutError,
    SendFailedError,
    SocketBusyError,
    WriteFailedError,
)

logger = logging.getLogger(__name__)

TcpValidator = Callable[[bytes], Optional[bytes]]
"""receives everything received so far, returns the frame or None to keep waiting"""

UdpValidator = Callable[[bytes, list[bytes]], Optional[bytes]]
"""receives the newest datagram and all datagrams so far, returns the frame or None"""


@dataclass
class PendingRequest:
    future: asyncio.Future
    validator: Optional[Callable] = None
    chunks: list[bytes] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None


class _RequestSlot:
    """Holds the one pending request of a transport and settles it."""

    def __init__(self) -> None:
        self._pending: PendingRequest | None = None

    @property
    def busy(self) -> bool:
        return self._pending is not None

    def _begin(self, validator: Optional[Callable], timeout: float, timeout_message: str) -> PendingRequest:
        # Check-and-set happens before the first await, so a second send()
        # issued before this one settles always sees the slot taken.
        if self._pending is not None:
            raise SocketBusyError("Socket busy")

        loop = asyncio.get_running_loop()
        pending = PendingRequest(future=loop.create_future(), validator=validator)
        pending.timer = loop.call_later(timeout, self._expire, pending, timeout_message)
        self._pending = pending
        return pending

    def _clear(self, pending: PendingRequest) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
        if self._pending is pending:
            self._pending = None

    def _resolve(self, pending: PendingRequest, data: bytes) -> None:
        if not pending.future.done():
            pending.future.set_result(data)
        self._clear(pending)

    def _reject(self, pending: PendingRequest, exc: BaseException) -> None:
        if not pending.future.done():
            pending.future.set_exception(exc)
        self._clear(pending)

    def _expire(self, pending: PendingRequest, message: str) -> None:
        if self._pending is not pending:
            return
        logger.warning(message)
        self._reject(pending, QueryTimeoutError(message))
        self._on_expired()

    def _on_expired(self) -> None:
        pass

    async def _wait(self, pending: PendingRequest) -> bytes:
        try:
            return await pending.future
        except asyncio.CancelledError:
            self._clear(pending)
            raise


class TcpTransport(_RequestSlot, asyncio.Protocol):
    """
    TCP client for one request/response exchange at a time.

    The connection is closed as soon as a frame has been received, the
    validator failed or the request timed out.

    :param host: Hostname or IP address of the server.
    :param port: TCP port of the server.
    :param timeout: Default timeout in seconds for connecting and for each request.
    """

    DEFAULT_TIMEOUT = 3.0
    """default timeout in seconds"""

    def __init__(self, host: str, port: int, timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.timeout = timeout
        self.latency: int | None = None
        """time in milliseconds it took to establish the connection"""
        self._transport: asyncio.Transport | None = None

    async def __aenter__(self) -> "TcpTransport":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    @property
    def connected(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    async def connect(self) -> None:
        loop = asyncio.get_running_loop()
        start_time = perf_counter()
        try:
            await asyncio.wait_for(
                loop.create_connection(lambda: self, self.host, self.port),
                self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise QueryTimeoutError(f"TCP connect timeout {self.host}:{self.port}") from e
        self.latency = round((perf_counter() - start_time) * 1000)

    async def send(
        self,
        payload: bytes,
        validator: TcpValidator | None = None,
        timeout: float | None = None,
    ) -> bytes:
        """
        Write a request and wait for the response.

        :param payload: Raw request bytes.
        :param validator: Called with all bytes received so far. Returns the
            complete frame, or None to keep waiting. Without a validator the
            first chunk received is returned as is.
        :param timeout: Seconds to wait. Defaults to the transport timeout.
        """
        pending = self._begin(
            validator,
            self.timeout if timeout is None else timeout,
            f"TCP Timeout {self.host}:{self.port}",
        )

        if not self.connected:
            self._clear(pending)
            raise WriteFailedError(f"TCP Write Failed {self.host}:{self.port}: not connected")
        try:
            self._transport.write(payload)
        except (OSError, RuntimeError) as e:
            self._clear(pending)
            raise WriteFailedError(f"TCP Write Failed {self.host}:{self.port}: {e}") from e

        logger.debug(f"TCP sent {len(payload)} bytes to {self.host}:{self.port}")
        return await self._wait(pending)

    def close(self) -> None:
        """
        End the connection.

        A request still pending is left unsettled; it fails once its timer fires.
        """
        if self._transport is not None:
            self._transport.close()

    def _on_expired(self) -> None:
        self.close()

    # asyncio.Protocol callbacks

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport

    def data_received(self, data: bytes) -> None:
        pending = self._pending
        if pending is None:
            return

        pending.chunks.append(bytes(data))
        buffer = b"".join(pending.chunks)

        # Without a validator the first chunk wins, even if the reply spans
        # several chunks.
        if pending.validator is None:
            self._resolve(pending, buffer)
            self.close()
            return

        try:
            frame = pending.validator(buffer)
        except Exception as e:
            self._reject(pending, e)
            self.close()
            return

        if frame is not None:
            self._resolve(pending, frame)
            self.close()

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None and self._pending is not None:
            self._reject(self._pending, exc)


class UdpTransport(_RequestSlot, asyncio.DatagramProtocol):
    """
    UDP client for one request/response exchange at a time.

    The socket is created on the first `send()` and reused until `close()`.

    :param use_ipv6: Resolve AAAA records and use an IPv6 socket.
    """

    DEFAULT_TIMEOUT = 2.0
    """default timeout in seconds"""

    def __init__(self, use_ipv6: bool = False) -> None:
        super().__init__()
        self.use_ipv6 = use_ipv6
        self._transport: asyncio.DatagramTransport | None = None

    async def __aenter__(self) -> "UdpTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    async def _ensure_endpoint(self) -> None:
        if self._transport is not None:
            return
        loop = asyncio.get_running_loop()
        if self.use_ipv6:
            local_addr = ("::", 0)
            family = socket.AF_INET6
        else:
            local_addr = ("0.0.0.0", 0)
            family = socket.AF_INET
        await loop.create_datagram_endpoint(lambda: self, local_addr=local_addr, family=family)

    async def send(
        self,
        payload: bytes,
        port: int,
        host: str,
        timeout: float = DEFAULT_TIMEOUT,
        validator: UdpValidator | None = None,
    ) -> bytes:
        """
        Send a datagram and wait for the response.

        :param payload: Raw request bytes.
        :param port: Destination port.
        :param host: Destination hostname or IP address.
        :param timeout: Seconds to wait, DNS lookup included.
        :param validator: Called with the newest datagram and all datagrams
            received so far. Returns the complete response, or None to keep
            waiting. Without a validator the first datagram is returned.
        """
        pending = self._begin(
            validator, timeout, f"Timeout waiting for response from {host}:{port}"
        )

        try:
            address = await resolve_host(host, self.use_ipv6, lifetime=timeout)
            await self._ensure_endpoint()
            if not pending.future.done():
                self._transport.sendto(payload, (address, port))
        except OSError as e:
            self._clear(pending)
            raise SendFailedError(f"Failed to send packet to {host}:{port}: {e}") from e
        except asyncio.CancelledError:
            self._clear(pending)
            raise

        logger.debug(f"UDP sent {len(payload)} bytes to {host}:{port} ({address})")
        return await self._wait(pending)

    def close(self) -> None:
        """
        Close the socket.

        A request still pending is left unsettled; it fails once its timer fires.
        """
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    # asyncio.DatagramProtocol callbacks

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        pending = self._pending
        if pending is None:
            return

        chunk = bytes(data)
        pending.chunks.append(chunk)

        if pending.validator is None:
            self._resolve(pending, chunk)
            return

        try:
            frame = pending.validator(chunk, pending.chunks)
        except Exception as e:
            self._reject(pending, e)
            return

        if frame is not None:
            self._resolve(pending, frame)

    def error_received(self, exc: Exception) -> None:
        if self._pending is not None:
            self._reject(self._pending, SendFailedError(f"Socket error: {exc}"))
