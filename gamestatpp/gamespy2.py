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
import logging
import re
import struct

from .address import is_ipv6
from .buffer import ByteCursor
from .gamespy1 import GameSpyStatus
from .transport import UdpTransport

logger = logging.getLogger(__name__)

SESSION_ID = 0x04050607
REQUEST_ALL = 0xFFFFFF01
"""info, players and teams"""

_FIELD_SUFFIX = re.compile(r"(_t|_)$")


def build_status_request() -> bytes:
    # 0xFE 0xFD | type 0x00 (status) | session id | request flags
    return struct.pack(">BBBII", 0xFE, 0xFD, 0x00, SESSION_ID, REQUEST_ALL)


def validate_response(chunk: bytes, chunks: list[bytes]) -> bytes | None:
    total = b"".join(chunks)
    if len(total) > 5 and total[0] == 0x00:
        return total
    return None


def parse_table(reader: ByteCursor) -> list[dict[str, str]]:
    """
    Parse one table: a list of column names ended by an empty string, then
    rows of one string per column until the next 0x00 delimiter.
    """
    fields = []
    while reader.remaining():
        name = reader.c_string("latin-1")
        if not name:
            break
        # "player_" -> "player", "score_t" -> "score"
        fields.append(_FIELD_SUFFIX.sub("", name.lower()))

    if not fields:
        return []

    rows = []
    while reader.remaining() and reader.peek() != 0x00:
        start = reader.offset
        row = {name: reader.c_string("latin-1") for name in fields}
        # unterminated trailing bytes
        if reader.offset == start:
            break
        rows.append(row)

    return rows


def parse_status(buffer: bytes) -> GameSpyStatus:
    reader = ByteCursor(buffer)
    info = {}
    players = []
    teams = []

    reader.u8()  # type
    reader.read(4)  # session id

    while reader.remaining():
        key = reader.c_string("latin-1")
        if not key:
            break
        info[key.lower()] = reader.c_string("latin-1")

    while reader.remaining():
        if reader.u8() != 0x00:
            break
        if reader.remaining():
            reader.u8()  # row count

        table = parse_table(reader)
        if not table:
            continue

        # the first row tells players from teams
        columns = table[0].keys()
        if "player" in columns or "name" in columns:
            players = table
        elif "team" in columns or "teamname" in columns:
            teams = table
        else:
            logger.warning(f"Discarding unknown GameSpy2 table with columns {sorted(columns)}")

    return GameSpyStatus(info=info, players=players, teams=teams)


class GameSpy2Client:
    """
    GameSpy2 query client, sends the 11 byte status request for info, players and teams.

    :param host: Hostname or IP address of the server.
    :param port: Query port of the server.
    :param timeout: Timeout in seconds.
    :param use_ipv6: Use an IPv6 socket and AAAA lookups. IPv6 literal hosts always do.
    """

    DEFAULT_TIMEOUT = 3.0

    def __init__(self, host: str, port: int, timeout: float = DEFAULT_TIMEOUT, use_ipv6: bool = False) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.use_ipv6 = use_ipv6
        self._transport: UdpTransport | None = None

    async def __aenter__(self) -> "GameSpy2Client":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    async def get_status(self) -> GameSpyStatus:
        if self._transport is None:
            self._transport = UdpTransport(self.use_ipv6 or is_ipv6(self.host))

        response = await self._transport.send(
            build_status_request(), self.port, self.host, self.timeout, validate_response
        )
        return parse_status(response)
