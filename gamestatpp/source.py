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
Valve A2S server queries (Source engine and the legacy GoldSrc layout).

See https://developer.valvesoftware.com/wiki/Server_queries
"""
import logging
from dataclasses import dataclass

from .address import is_ipv6
from .buffer import ByteCursor
from .errors import ChallengeLoopDetectedError, InvalidHeaderError, OutOfBoundsError
from .transport import UdpTransport

logger = logging.getLogger(__name__)

SINGLE_PACKET = b"\xff\xff\xff\xff"
"""envelope of a reply that fits into one datagram (-1 as int32 LE)"""
SPLIT_PACKET = b"\xfe\xff\xff\xff"
"""envelope of one fragment of a multi-packet reply (-2 as int32 LE)"""

A2S_INFO = 0x54
A2S_PLAYER = 0x55
A2S_RULES = 0x56

S2A_INFO = 0x49
S2A_INFO_GOLDSRC = 0x6D
S2A_PLAYER = 0x44
S2A_RULES = 0x45
S2C_CHALLENGE = 0x41

INFO_PAYLOAD = b"Source Engine Query\x00"
CHALLENGE_PLACEHOLDER = b"\xff\xff\xff\xff"

MAX_CHALLENGE_ATTEMPTS = 5
"""challenge replies answered before giving up"""

THE_SHIP_APP_ID = 2400

GOLDSRC_FRAGMENT_HEADER = 9
SOURCE_FRAGMENT_HEADER = 12


@dataclass(frozen=True)
class TheShipInfo:
    mode: int
    witnesses: int
    duration: int


@dataclass(frozen=True)
class GoldSrcInfo:
    address: str
    is_mod: bool
    link: str | None = None
    download_link: str | None = None


@dataclass(frozen=True)
class ServerInfo:
    """Decoded A2S_INFO reply, Source or GoldSrc."""

    protocol: int
    name: str
    map: str
    folder: str
    game: str
    app_id: int
    players: int
    max_players: int
    bots: int
    server_type: str
    """dedicated, non-dedicated, sourcetv or unknown"""
    environment: str
    """linux, windows, mac or unknown"""
    visibility: str
    """public or private (password protected)"""
    vac: str
    """secured or unsecured (VAC)"""
    version: str
    port: int | None = None
    steam_id: int | None = None
    keywords: str | None = None
    the_ship: TheShipInfo | None = None
    gold_src: GoldSrcInfo | None = None


@dataclass(frozen=True)
class PlayerRecord:
    index: int
    name: str
    score: int
    duration: float
    """seconds connected"""


@dataclass(frozen=True)
class RuleRecord:
    name: str
    value: str


# Packet validation


def _strip_single_header(buffer: bytes) -> bytes:
    if buffer[:4] == SINGLE_PACKET:
        return buffer[4:]
    return buffer


def matches_expected(buffer: bytes, expected_header: int) -> bool:
    """
    Check the leading byte of a (single envelope) reply.

    Challenges are always accepted, GoldSrc INFO replies are accepted in
    place of Source INFO replies.
    """
    payload = _strip_single_header(buffer)
    if not payload:
        return False

    response_type = payload[0]
    return (
        response_type == expected_header
        or response_type == S2C_CHALLENGE
        or (expected_header == S2A_INFO and response_type == S2A_INFO_GOLDSRC)
    )


def _reassemble(
    fragments: list[bytes], header_size: int, split_meta, expected_header: int
) -> bytes | None:
    """
    Join fragments under one fragment layout.

    :param split_meta: Maps a fragment to ``(index, total)``.
    """
    by_index = {}
    total = 0
    for fragment in fragments:
        if len(fragment) < header_size:
            return None
        index, fragment_total = split_meta(fragment)
        total = max(total, fragment_total)
        # duplicates of a fragment are dropped
        by_index.setdefault(index, fragment)

    if total == 0 or len(by_index) < total:
        return None

    reassembled = b"".join(by_index[index][header_size:] for index in sorted(by_index))
    return reassembled if matches_expected(reassembled, expected_header) else None


def _goldsrc_meta(fragment: bytes) -> tuple[int, int]:
    # packed byte: high nibble = index, low nibble = total
    return fragment[8] >> 4, fragment[8] & 0x0F


def _source_meta(fragment: bytes) -> tuple[int, int]:
    return fragment[9], fragment[8]


def validate_packet(chunk: bytes, chunks: list[bytes], expected_header: int) -> bytes | None:
    """
    Frame validator for A2S replies.

    Returns the complete reply, or None while more fragments are needed.
    Malformed, duplicate or stray fragments never raise, they just leave the
    reply incomplete.

    :param chunk: The newest datagram.
    :param chunks: All datagrams received for this request, newest last.
    :param expected_header: Response byte of the request (0x49, 0x44, 0x45).
    """
    envelope = chunk[:4]

    if envelope == SINGLE_PACKET:
        return chunk if matches_expected(chunk, expected_header) else None

    if envelope == SPLIT_PACKET:
        if len(chunk) < GOLDSRC_FRAGMENT_HEADER:
            return None
        request_id = chunk[4:8]
        fragments = [c for c in chunks if c[:4] == SPLIT_PACKET and c[4:8] == request_id]

        # GoldSrc first (packed byte), then Source
        reassembled = _reassemble(
            fragments, GOLDSRC_FRAGMENT_HEADER, _goldsrc_meta, expected_header
        )
        if reassembled is None:
            reassembled = _reassemble(
                fragments, SOURCE_FRAGMENT_HEADER, _source_meta, expected_header
            )
        if reassembled is not None:
            logger.debug(f"Reassembled A2S reply from {len(fragments)} fragments")
        return reassembled

    return None


# Parsers


def _parse_server_type(value: int) -> str:
    return {
        "d": "dedicated",
        "l": "non-dedicated",
        "p": "sourcetv",
    }.get(chr(value).lower(), "unknown")


def _parse_environment(value: int) -> str:
    return {
        "l": "linux",
        "w": "windows",
        "m": "mac",
        "o": "mac",
    }.get(chr(value).lower(), "unknown")


def parse_info(buffer: bytes) -> ServerInfo:
    """
    Parse an A2S_INFO reply (without the single packet envelope).

    The leading byte selects the layout: 0x49 for Source, 0x6D for GoldSrc.
    """
    reader = ByteCursor(buffer)
    header = reader.u8()

    if header == S2A_INFO:
        return _parse_source_info(reader)
    if header == S2A_INFO_GOLDSRC:
        return _parse_goldsrc_info(reader)

    raise InvalidHeaderError(f"Unknown A2S_INFO header: 0x{header:02x}")


def _parse_source_info(reader: ByteCursor) -> ServerInfo:
    protocol = reader.u8()
    name = reader.c_string()
    map_name = reader.c_string()
    folder = reader.c_string()
    game = reader.c_string()
    app_id = reader.u16le()
    players = reader.u8()
    max_players = reader.u8()
    bots = reader.u8()
    server_type = _parse_server_type(reader.u8())
    environment = _parse_environment(reader.u8())
    visibility = "public" if reader.u8() == 0 else "private"
    vac = "unsecured" if reader.u8() == 0 else "secured"

    the_ship = None
    if app_id == THE_SHIP_APP_ID:
        the_ship = TheShipInfo(mode=reader.u8(), witnesses=reader.u8(), duration=reader.u8())

    version = reader.c_string()

    port = steam_id = keywords = None
    # Extra Data Flag, fields follow in this fixed order
    if reader.remaining():
        edf = reader.u8()
        if edf & 0x80:
            port = reader.u16le()
        if edf & 0x10:
            steam_id = reader.u64le()
        if edf & 0x40:
            # SourceTV port and name
            reader.u16le()
            reader.c_string()
        if edf & 0x20:
            keywords = reader.c_string()
        if edf & 0x01:
            steam_id = reader.u64le()

    return ServerInfo(
        protocol=protocol,
        name=name,
        map=map_name,
        folder=folder,
        game=game,
        app_id=app_id,
        players=players,
        max_players=max_players,
        bots=bots,
        server_type=server_type,
        environment=environment,
        visibility=visibility,
        vac=vac,
        version=version,
        port=port,
        steam_id=steam_id,
        keywords=keywords,
        the_ship=the_ship,
    )


def _parse_goldsrc_info(reader: ByteCursor) -> ServerInfo:
    address = reader.c_string()
    name = reader.c_string()
    map_name = reader.c_string()
    folder = reader.c_string()
    game = reader.c_string()
    players = reader.u8()
    max_players = reader.u8()
    protocol = reader.u8()
    server_type = _parse_server_type(reader.u8())
    environment = _parse_environment(reader.u8())
    visibility = "public" if reader.u8() == 0 else "private"
    is_mod = reader.u8() == 1

    link = download_link = None
    if is_mod:
        link = reader.c_string()
        download_link = reader.c_string()
        reader.u8()  # NUL
        reader.i32le()  # mod version
        reader.i32le()  # mod size in bytes
        reader.u8()  # type
        reader.u8()  # DLL

    vac = "secured" if reader.remaining() and reader.u8() == 1 else "unsecured"
    bots = reader.u8() if reader.remaining() else 0

    return ServerInfo(
        protocol=protocol,
        name=name,
        map=map_name,
        folder=folder,
        game=game,
        app_id=0,
        players=players,
        max_players=max_players,
        bots=bots,
        server_type=server_type,
        environment=environment,
        visibility=visibility,
        vac=vac,
        version="1.0",
        gold_src=GoldSrcInfo(
            address=address, is_mod=is_mod, link=link, download_link=download_link
        ),
    )


def parse_players(buffer: bytes) -> list[PlayerRecord]:
    """
    Parse an A2S_PLAYER reply.

    Servers do not always send as many records as announced, so the list
    ends early, without an error, when the buffer runs out. A record cut off
    inside its name is dropped.
    """
    reader = ByteCursor(buffer)
    header = reader.u8()
    if header != S2A_PLAYER:
        raise InvalidHeaderError(f"Invalid A2S_PLAYER header: 0x{header:02x}")

    count = reader.u8()
    players = []
    for _ in range(count):
        if not reader.remaining():
            break
        try:
            players.append(
                PlayerRecord(
                    index=reader.u8(),
                    name=reader.c_string(strict=True),
                    score=reader.i32le(),
                    duration=reader.f32le(),
                )
            )
        except OutOfBoundsError:
            break
    return players


def parse_rules(buffer: bytes) -> list[RuleRecord]:
    """Parse an A2S_RULES reply, same early end tolerance as `parse_players`."""
    reader = ByteCursor(buffer)
    header = reader.u8()
    if header != S2A_RULES:
        raise InvalidHeaderError(f"Invalid A2S_RULES header: 0x{header:02x}")

    count = reader.u16le()
    rules = []
    for _ in range(count):
        if not reader.remaining():
            break
        try:
            rules.append(RuleRecord(name=reader.c_string(strict=True), value=reader.c_string(strict=True)))
        except OutOfBoundsError:
            break
    return rules


class SourceQueryClient:
    """
    A2S client for Source and GoldSrc servers.

    One UDP socket is opened on the first query and shared by `get_info()`,
    `get_players()` and `get_rules()`. Use ``async with`` or call `close()`.

    :param host: Hostname or IP address of the server.
    :param port: Query port, usually the game port.
    :param timeout: Timeout in seconds for each request (challenge retries included separately).
    :param use_ipv6: Use an IPv6 socket and AAAA lookups. IPv6 literal hosts always do.
    """

    DEFAULT_PORT = 27015
    """default Source engine query port"""
    DEFAULT_TIMEOUT = 2.0
    """default timeout in seconds per request"""

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

    async def __aenter__(self) -> "SourceQueryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    def _ensure_transport(self) -> UdpTransport:
        if self._transport is None:
            self._transport = UdpTransport(self.use_ipv6 or is_ipv6(self.host))
        return self._transport

    async def _send(self, packet: bytes, expected_header: int) -> bytes:
        transport = self._ensure_transport()
        response = await transport.send(
            packet,
            self.port,
            self.host,
            self.timeout,
            lambda chunk, chunks: validate_packet(chunk, chunks, expected_header),
        )
        return _strip_single_header(response)

    async def query(self, request: int, payload: bytes, expected_header: int) -> bytes:
        """
        Send an A2S request and answer challenges until the real reply arrives.

        :param request: Request byte (A2S_INFO, A2S_PLAYER, A2S_RULES).
        :param payload: Request payload sent with the first attempt.
        :param expected_header: Response byte of the reply.
        :return: The reply without the single packet envelope.
        """
        header = SINGLE_PACKET + bytes([request])
        response = await self._send(header + payload, expected_header)

        attempts = 0
        while response[:1] == bytes([S2C_CHALLENGE]):
            if attempts >= MAX_CHALLENGE_ATTEMPTS:
                raise ChallengeLoopDetectedError(
                    f"Challenge loop detected for {self.host}:{self.port}"
                )
            attempts += 1

            challenge = ByteCursor(response, 1).read(4)
            logger.debug(
                f"A2S challenge {challenge.hex()} from {self.host}:{self.port} (attempt {attempts})"
            )

            # INFO keeps its payload, PLAYER/RULES replace the placeholder
            if request == A2S_INFO:
                packet = header + payload + challenge
            else:
                packet = header + challenge
            response = await self._send(packet, expected_header)

        return response

    async def get_info(self) -> ServerInfo:
        return parse_info(await self.query(A2S_INFO, INFO_PAYLOAD, S2A_INFO))

    async def get_players(self) -> list[PlayerRecord]:
        return parse_players(await self.query(A2S_PLAYER, CHALLENGE_PLACEHOLDER, S2A_PLAYER))

    async def get_rules(self) -> list[RuleRecord]:
        return parse_rules(await self.query(A2S_RULES, CHALLENGE_PLACEHOLDER, S2A_RULES))
