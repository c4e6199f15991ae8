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
from dataclasses import dataclass

from .address import is_ipv6
from .buffer import ByteCursor
from .errors import InvalidHeaderError
from .transport import UdpTransport

RAKNET_MAGIC = bytes(
    [
        0x00,
        0xFF,
        0xFF,
        0x00,
        0xFE,
        0xFE,
        0xFE,
        0xFE,
        0xFD,
        0xFD,
        0xFD,
        0xFD,
        0x12,
        0x34,
        0x56,
        0x78,
    ]
)

UNCONNECTED_PING = 0x01
UNCONNECTED_PONG = 0x1C

MOTD_INDEX = [
    "edition",
    "motd",
    "protocol",
    "version",
    "players",
    "max_players",
    "server_id",
    "map",
    "game_mode",
    "game_mode_id",
    "port_v4",
    "port_v6",
]
"""field order of the semicolon delimited server id string"""


@dataclass(frozen=True)
class BedrockStatus:
    edition: str
    """MCPE for Bedrock, MCEE for Education Edition"""
    motd: str
    protocol: int
    version: str
    players: int
    max_players: int
    server_id: str
    map: str
    """secondary MotD line, usually the world name"""
    game_mode: str
    game_mode_id: int
    port_v4: int
    port_v6: int


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def parse_pong(buffer: bytes) -> BedrockStatus:
    """
    Parse an Unconnected Pong.

    The field count of the server id string is not fixed: older Bedrock
    servers send fewer fields, missing ones default to "" or 0.
    """
    # response packet:
    # byte - 0x1C - Unconnected Pong
    # long - timestamp
    # long - server GUID
    # 16 byte - magic
    # short - Server ID string length
    # string - Server ID string
    reader = ByteCursor(buffer)
    packet_id = reader.u8()

    if packet_id != UNCONNECTED_PONG:
        raise InvalidHeaderError(f"Invalid RakNet Header: 0x{packet_id:02x}")

    reader.read(8)  # timestamp
    reader.read(8)  # server GUID
    reader.read(16)  # magic

    length = reader.u16be()
    server_id_string = reader.read(length).decode("utf8", errors="replace")

    parts = server_id_string.split(";")
    payload = {key: parts[i] if i < len(parts) else "" for i, key in enumerate(MOTD_INDEX)}

    return BedrockStatus(
        edition=payload["edition"],
        motd=payload["motd"],
        protocol=_to_int(payload["protocol"]),
        version=payload["version"],
        players=_to_int(payload["players"]),
        max_players=_to_int(payload["max_players"]),
        server_id=payload["server_id"],
        map=payload["map"],
        game_mode=payload["game_mode"],
        game_mode_id=_to_int(payload["game_mode_id"]),
        port_v4=_to_int(payload["port_v4"]),
        port_v6=_to_int(payload["port_v6"]),
    )


class RaknetClient:
    """
    Status client for Bedrock servers (Minecraft PE, Windows 10 or Education Edition).
    The protocol is based on the RakNet `Unconnected Ping` packet.

    See https://wiki.vg/Raknet_Protocol#Unconnected_Ping

    :param host: Hostname or IP address of the server.
    :param port: UDP port of the server.
    :param timeout: Timeout in seconds.
    :param use_ipv6: Whether to use IPv6 for DNS resolution and the socket.
    """

    DEFAULT_PORT = 19132
    """default UDP port for Bedrock/MCPE IPv4 servers"""
    DEFAULT_PORT_V6 = 19133
    """default UDP port for Bedrock/MCPE IPv6 servers"""
    DEFAULT_TIMEOUT = 2.0

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        use_ipv6: bool = False,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.use_ipv6 = use_ipv6
        self._transport: UdpTransport | None = None

    async def __aenter__(self) -> "RaknetClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    async def get_status(self) -> BedrockStatus:
        if self._transport is None:
            self._transport = UdpTransport(self.use_ipv6 or is_ipv6(self.host))

        # Construct the `Unconnected_Ping` packet
        # ID (0x01) | Time (8b) | Magic (16b) | Client GUID (8b)
        packet = bytes([UNCONNECTED_PING]) + bytes(8) + RAKNET_MAGIC + bytes(8)

        response = await self._transport.send(packet, self.port, self.host, self.timeout)
        return parse_pong(response)
