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
import json
import logging
import re
import struct
from dataclasses import dataclass, field

from .address import is_domain, resolve_srv
from .buffer import ByteCursor
from .errors import InvalidPacketIdError, OutOfBoundsError
from .transport import TcpTransport

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 47
"""protocol version sent in the handshake (Minecraft 1.8), any version gets a status reply"""


def pack_varint(data: int) -> bytes:
    """Small helper method for packing a varint from an int."""
    # negative values are sent as their 32-bit two's complement
    data &= 0xFFFFFFFF
    ordinal = b""

    while True:
        byte = data & 0x7F
        data >>= 7
        ordinal += struct.pack("B", byte | (0x80 if data > 0 else 0))

        if data == 0:
            break

    return ordinal


def pack_varstring(value: str) -> bytes:
    encoded = value.encode("utf8")
    return pack_varint(len(encoded)) + encoded


def motd_strip_formatting(raw_motd: str | dict) -> str:
    """
    Function for stripping all formatting codes from a motd. Supports Json Chat components (as dict) and
    the legacy formatting codes.

    :param raw_motd: The raw MOTD, either as a string or dict (from "json.loads()")
    """
    stripped_motd = ""

    if isinstance(raw_motd, str):
        stripped_motd = re.sub(r"§.", "", raw_motd)

    elif isinstance(raw_motd, dict):
        stripped_motd = motd_strip_formatting(raw_motd.get("text", ""))

        if raw_motd.get("extra"):
            for sub in raw_motd["extra"]:
                stripped_motd += motd_strip_formatting(sub)

    return stripped_motd


@dataclass(frozen=True)
class PlayerSample:
    name: str
    id: str


@dataclass(frozen=True)
class JavaStatus:
    version_name: str
    """server version name as reported, e.g. Paper 1.20.4"""
    version_protocol: int
    players_max: int
    players_online: int
    description: str
    """message of the day: the description string, or its "text" field"""
    stripped_motd: str
    """message of the day, stripped of all formatting ("human-readable")"""
    sample: list[PlayerSample] = field(default_factory=list)
    """sample of online players, may be empty even if players_online is over 0"""
    favicon: str | None = None
    """data URI of the server icon ("data:image/png;base64,...")"""
    latency: int | None = None
    """ping time to server in milliseconds"""


def validate_frame(buffer: bytes) -> bytes | None:
    """
    Frame validator for the status response.

    The response starts with a VarInt holding the length of the rest of the
    packet (packet id + data). Returns exactly one packet once it is
    complete, None while bytes are missing.
    """
    reader = ByteCursor(buffer)
    try:
        length = reader.varint()
    except OutOfBoundsError:
        return None

    total_needed = reader.offset + length
    if len(buffer) >= total_needed:
        return buffer[:total_needed]
    return None


def build_status_request(host: str, port: int) -> bytes:
    """Handshake (next state = status) followed by the empty status request."""
    # Construct Handshake packet
    # packet id 0x00, protocol version, server address, server port,
    # next state (1 for status, 2 for login)
    handshake = bytearray([0x00])
    handshake += pack_varint(PROTOCOL_VERSION)
    handshake += pack_varstring(host)
    handshake += struct.pack(">H", port)
    handshake += pack_varint(1)

    # Prepend full packet length
    handshake = pack_varint(len(handshake)) + handshake

    # Now the empty "Request" packet: varint len, 0x00
    request = bytes([0x01, 0x00])

    return bytes(handshake) + request


def parse_status(packet: bytes, latency: int | None = None) -> JavaStatus:
    """
    Parse one framed status response packet.

    :param packet: Length prefixed packet as returned by `validate_frame`.
    :param latency: Connection latency to attach to the status.
    """
    reader = ByteCursor(packet)
    reader.varint()  # packet length
    packet_id = reader.varint()

    # If we receive a packet with any other id, something went wrong.
    if packet_id != 0:
        raise InvalidPacketIdError(f"Invalid Packet ID: {packet_id}")

    payload_obj = json.loads(reader.var_string())

    version = payload_obj.get("version") or {}
    players = payload_obj.get("players") or {}

    # The motd might be a string directly, not a json object
    raw_description = payload_obj.get("description")
    if isinstance(raw_description, str):
        description = raw_description
    elif isinstance(raw_description, dict) and raw_description.get("text"):
        description = raw_description["text"]
    else:
        description = "No MOTD"

    # There may be a "sample" field in the "players" object that contains a sample list of online players
    sample = [
        PlayerSample(name=player.get("name", ""), id=player.get("id", ""))
        for player in players.get("sample") or []
    ]

    return JavaStatus(
        version_name=version.get("name") or "Unknown",
        version_protocol=version.get("protocol") or 0,
        players_max=players.get("max") or 0,
        players_online=players.get("online") or 0,
        description=description,
        stripped_motd=motd_strip_formatting(raw_description or ""),
        sample=sample,
        favicon=payload_obj.get("favicon"),
        latency=latency,
    )


class MinecraftJavaClient:
    """
    Server List Ping client for modern (MC Java >= 1.7) servers.

    See https://wiki.vg/Server_List_Ping#Current

    :param host: Hostname or IP address of the Minecraft server.
    :param port: Optional port. 0 means auto detection: the ``_minecraft._tcp`` SRV record
        of a domain if there is one, otherwise 25565.
    :param timeout: Timeout in seconds for connecting and for the status exchange.
    :param use_srv: Whether to look up SRV records when the port is auto detected.
    """

    DEFAULT_PORT = 25565
    """default TCP port for SLP queries"""
    DEFAULT_TIMEOUT = 3.0
    """default TCP timeout in seconds"""

    def __init__(
        self,
        host: str,
        port: int = 0,
        timeout: float = DEFAULT_TIMEOUT,
        use_srv: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.use_srv = use_srv
        self.target: tuple[str, int] | None = None
        """host and port of the last connection attempt, SRV lookup applied"""
        self._transport: TcpTransport | None = None

    async def __aenter__(self) -> "MinecraftJavaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    async def _resolve_target(self) -> tuple[str, int]:
        if self.port:
            return self.host, self.port

        if self.use_srv and is_domain(self.host):
            srv = await resolve_srv(self.host, lifetime=self.timeout)
            if srv is not None:
                logger.debug(f"Using SRV record of {self.host}: {srv[0]}:{srv[1]}")
                return srv

        return self.host, self.DEFAULT_PORT

    async def get_status(self) -> JavaStatus:
        target_host, target_port = await self._resolve_target()
        self.target = (target_host, target_port)

        # The server closes the connection after one status response, so
        # every call gets its own connection.
        self._transport = TcpTransport(target_host, target_port, self.timeout)
        try:
            await self._transport.connect()
            # the handshake carries the address the client was asked for
            response = await self._transport.send(
                build_status_request(self.host, target_port), validate_frame
            )
            return parse_status(response, self._transport.latency)
        finally:
            self.close()
