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
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Any

from .errors import QueryError, QueryTimeoutError
from .gamespy1 import GameSpy1Client
from .gamespy2 import GameSpy2Client
from .minecraft import MinecraftJavaClient
from .raknet import RaknetClient
from .source import SourceQueryClient

logger = logging.getLogger(__name__)


class ConnStatus(Enum):
    """
    Contains possible connection states.

    - `SUCCESS`: The query succeeded (Request & response parsing OK)
    - `CONNFAIL`: The socket to the server could not be established. Server offline, wrong hostname or port?
    - `TIMEOUT`: The connection timed out. (Server under too much load? Firewall rules OK?)
    - `UNKNOWN`: The server answered, but the reply could not be understood.
    """

    def __str__(self) -> str:
        return str(self.name)

    SUCCESS = 0
    """The query succeeded (Request & response parsing OK)"""

    CONNFAIL = -1
    """The socket to the server could not be established. (Server offline, wrong hostname or port?)"""

    TIMEOUT = -2
    """The connection timed out. (Server under too much load? Firewall rules OK?)"""

    UNKNOWN = -3
    """The server answered, but the reply could not be understood."""


class ProbeProtocol(Enum):
    """
    Contains the supported status protocols.

    - `SOURCE`: Valve A2S queries (Source and GoldSrc servers), UDP.
    - `MINECRAFT`: Minecraft Java Edition Server List Ping, TCP.
    - `BEDROCK`: Minecraft Bedrock/MCPE RakNet Unconnected Ping, UDP.
    - `GAMESPY1`: GameSpy (version 1) backslash queries, UDP.
    - `GAMESPY2`: GameSpy2 binary queries, UDP.
    """

    def __str__(self) -> str:
        return str(self.name)

    SOURCE = 0
    MINECRAFT = 1
    BEDROCK = 2
    GAMESPY1 = 3
    GAMESPY2 = 4

    @property
    def default_port(self) -> int:
        return DEFAULT_PORTS[self]


DEFAULT_PORTS = {
    ProbeProtocol.SOURCE: SourceQueryClient.DEFAULT_PORT,
    ProbeProtocol.MINECRAFT: MinecraftJavaClient.DEFAULT_PORT,
    ProbeProtocol.BEDROCK: RaknetClient.DEFAULT_PORT,
    ProbeProtocol.GAMESPY1: 7778,
    ProbeProtocol.GAMESPY2: 2302,
}
"""port used when a probe is started with port 0"""


@dataclass(frozen=True)
class ProbeResult:
    protocol: ProbeProtocol
    host: str
    port: int
    connection_status: ConnStatus
    status: Any = None
    """status record of the protocol client, None unless the probe succeeded"""
    error: str | None = None
    latency: int | None = None
    """round trip time of the whole query in milliseconds"""


def classify_error(error: BaseException) -> ConnStatus:
    """Map an exception raised by a protocol client to a connection status."""
    if isinstance(error, (QueryTimeoutError, asyncio.TimeoutError)):
        return ConnStatus.TIMEOUT
    # send/write failures are socket errors as well
    if isinstance(error, OSError):
        return ConnStatus.CONNFAIL
    return ConnStatus.UNKNOWN


def _make_client(protocol: ProbeProtocol, host: str, port: int, timeout: float | None):
    kwargs = {} if timeout is None else {"timeout": timeout}

    if protocol is ProbeProtocol.MINECRAFT:
        # port 0 lets the client look up SRV records
        return MinecraftJavaClient(host, port, **kwargs)

    port = port or protocol.default_port
    if protocol is ProbeProtocol.SOURCE:
        return SourceQueryClient(host, port, **kwargs)
    if protocol is ProbeProtocol.BEDROCK:
        return RaknetClient(host, port, **kwargs)
    if protocol is ProbeProtocol.GAMESPY1:
        return GameSpy1Client(host, port, **kwargs)
    return GameSpy2Client(host, port, **kwargs)


async def _fetch(client) -> Any:
    if isinstance(client, SourceQueryClient):
        return await client.get_info()
    return await client.get_status()


def _reported_port(client, protocol: ProbeProtocol) -> int:
    # Java clients know the port an SRV record pointed them to
    target = getattr(client, "target", None)
    if target is not None:
        return target[1]
    return client.port or protocol.default_port


async def query(
    protocol: ProbeProtocol, host: str, port: int = 0, timeout: float | None = None
) -> ProbeResult:
    """
    Run one status query and report the outcome instead of raising.

    :param protocol: The protocol to speak.
    :param host: Hostname or IP address of the server.
    :param port: Port of the server, 0 for the protocol's default port.
    :param timeout: Timeout in seconds, None for the client's default.
    """
    client = _make_client(protocol, host, port, timeout)
    start_time = perf_counter()

    try:
        async with client:
            status = await _fetch(client)
    except (QueryError, OSError, ValueError, asyncio.TimeoutError) as e:
        port = _reported_port(client, protocol)
        connection_status = classify_error(e)
        logger.debug(f"{protocol} probe of {host}:{port} failed ({connection_status}): {e}")
        return ProbeResult(
            protocol=protocol,
            host=host,
            port=port,
            connection_status=connection_status,
            error=str(e) or type(e).__name__,
        )

    latency = getattr(status, "latency", None)
    if latency is None:
        latency = round((perf_counter() - start_time) * 1000)

    return ProbeResult(
        protocol=protocol,
        host=host,
        port=_reported_port(client, protocol),
        connection_status=ConnStatus.SUCCESS,
        status=status,
        latency=latency,
    )
