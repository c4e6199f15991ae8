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
GameSpy (version 1) queries: backslash delimited key/value pairs over UDP.

A reply looks like ``\\hostname\\My Server\\player_0\\Bob\\final\\``. Long
replies are split over several datagrams and end with ``\\final\\``.
"""
import logging
import re
from dataclasses import dataclass, field

from .address import is_ipv6
from .errors import QueryError
from .transport import UdpTransport

logger = logging.getLogger(__name__)

FINAL_MARKER = b"\\final\\"
DROPPED_KEYS = ("final", "queryid")

_INDEXED_KEY = re.compile(r"^(.+)_(\d+)$")


@dataclass(frozen=True)
class GameSpyStatus:
    """Server variables plus the player and team tables of a GameSpy reply."""

    info: dict[str, str] = field(default_factory=dict)
    players: list[dict[str, str]] = field(default_factory=list)
    teams: list[dict[str, str]] = field(default_factory=list)


def decode_key_values(raw: bytes) -> dict[str, str]:
    """
    Split a ``\\key\\value`` reply into a dict.

    Keys are lower-cased, the ``final`` and ``queryid`` bookkeeping keys are dropped.
    """
    parts = raw.decode("latin-1").split("\\")
    data = {}

    for i in range(1, len(parts) - 1, 2):
        key = parts[i].lower()
        if key and key not in DROPPED_KEYS:
            data[key] = parts[i + 1]

    return data


def _group_indexed(items) -> list[dict[str, str]]:
    groups: dict[int, dict[str, str]] = {}
    for index, prop, value in items:
        groups.setdefault(index, {})[prop] = value
    return [groups[index] for index in sorted(groups)]


def parse_indexed_list(raw: dict[str, str]) -> list[dict[str, str]]:
    """Group every ``<property>_<index>`` key by its index, other keys are ignored."""
    items = []
    for key, value in raw.items():
        match = _INDEXED_KEY.match(key)
        if match:
            items.append((int(match.group(2)), match.group(1), value))
    return _group_indexed(items)


def split_status(raw: dict[str, str]) -> GameSpyStatus:
    """
    Split a ``\\status\\`` reply into server info, players and teams.

    Indexed ``teamname``/``teamscore`` keys go to the teams, any other indexed
    key to the players.
    """
    info = {}
    players = []
    teams = []

    for key, value in raw.items():
        match = _INDEXED_KEY.match(key)
        if not match:
            info[key] = value
            continue

        prop, index = match.group(1), int(match.group(2))
        if prop.startswith("teamname") or prop.startswith("teamscore"):
            teams.append((index, prop, value))
        else:
            players.append((index, prop, value))

    return GameSpyStatus(info=info, players=_group_indexed(players), teams=_group_indexed(teams))


class GameSpy1Client:
    """
    GameSpy1 query client.

    :param host: Hostname or IP address of the server.
    :param port: Query port of the server.
    :param timeout: Timeout in seconds for each command.
    :param use_ipv6: Use an IPv6 socket and AAAA lookups. IPv6 literal hosts always do.
    """

    DEFAULT_TIMEOUT = 3.0
    """default timeout in seconds"""

    def __init__(self, host: str, port: int, timeout: float = DEFAULT_TIMEOUT, use_ipv6: bool = False) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.use_ipv6 = use_ipv6
        self._transport: UdpTransport | None = None

    async def __aenter__(self) -> "GameSpy1Client":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    async def send_command(self, command: str, wait_for_final: bool) -> dict[str, str]:
        """
        Send a command and decode the reply into a raw key/value dict.

        :param command: Command string, e.g. ``\\status\\``.
        :param wait_for_final: Keep collecting datagrams until ``\\final\\``
            arrives. Otherwise the first datagram is the reply.
        """
        if self._transport is None:
            self._transport = UdpTransport(self.use_ipv6 or is_ipv6(self.host))

        def validate(chunk: bytes, chunks: list[bytes]) -> bytes | None:
            total = b"".join(chunks)
            if FINAL_MARKER in total or not wait_for_final:
                return total
            return None

        response = await self._transport.send(
            command.encode("latin-1"), self.port, self.host, self.timeout, validate
        )
        return decode_key_values(response)

    async def _send_with_fallback(self, command: str) -> dict[str, str]:
        # Some servers never send \final\, ask once more and take the first datagram
        try:
            return await self.send_command(command, True)
        except QueryError as e:
            logger.debug(f"{command} to {self.host}:{self.port} failed ({e}), retrying without \\final\\")
            # fresh socket, late datagrams of the first attempt are dropped with the old one
            self.close()
            return await self.send_command(command, False)

    @staticmethod
    def _command(name: str, xserverquery: bool) -> str:
        return f"\\{name}\\xserverquery\\" if xserverquery else f"\\{name}\\"

    async def get_status(self, xserverquery: bool = False) -> GameSpyStatus:
        raw = await self._send_with_fallback(self._command("status", xserverquery))
        return split_status(raw)

    async def get_basic(self) -> dict[str, str]:
        return await self.send_command("\\basic\\", False)

    async def get_info(self, xserverquery: bool = False) -> dict[str, str]:
        return await self.send_command(self._command("info", xserverquery), False)

    async def get_rules(self, xserverquery: bool = False) -> dict[str, str]:
        return await self._send_with_fallback(self._command("rules", xserverquery))

    async def get_players(self, xserverquery: bool = False) -> list[dict[str, str]]:
        raw = await self._send_with_fallback(self._command("players", xserverquery))
        return parse_indexed_list(raw)

    async def get_teams(self, xserverquery: bool = False) -> list[dict[str, str]]:
        raw = await self._send_with_fallback(self._command("teams", xserverquery))
        return parse_indexed_list(raw)

    async def get_echo(self, message: str = "ping") -> bool:
        """Check that the server echoes ``\\echo\\<message>`` back."""
        try:
            data = await self.send_command(f"\\echo\\{message}", False)
        except QueryError as e:
            logger.debug(f"Echo to {self.host}:{self.port} failed: {e}")
            return False
        return message in data.values() or message in data or "echo" in data
