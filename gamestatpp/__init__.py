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
Asynchronous status probes for game servers.

Supported protocols: Valve A2S (Source/GoldSrc), Minecraft Java Server List Ping,
Minecraft Bedrock (RakNet), GameSpy1 and GameSpy2.
"""
from .buffer import ByteCursor
from .errors import (
    ChallengeLoopDetectedError,
    InvalidHeaderError,
    InvalidPacketIdError,
    OutOfBoundsError,
    ProtocolViolationError,
    QueryError,
    QueryTimeoutError,
    SendFailedError,
    SocketBusyError,
    VarIntTooLargeError,
    WriteFailedError,
)
from .gamespy1 import GameSpy1Client, GameSpyStatus
from .gamespy2 import GameSpy2Client
from .minecraft import JavaStatus, MinecraftJavaClient, PlayerSample, motd_strip_formatting
from .probe import ConnStatus, ProbeProtocol, ProbeResult, query
from .raknet import BedrockStatus, RaknetClient
from .source import PlayerRecord, RuleRecord, ServerInfo, SourceQueryClient
from .transport import TcpTransport, UdpTransport

__version__ = "0.1.0"

__all__ = [
    "BedrockStatus",
    "ByteCursor",
    "ChallengeLoopDetectedError",
    "ConnStatus",
    "GameSpy1Client",
    "GameSpy2Client",
    "GameSpyStatus",
    "InvalidHeaderError",
    "InvalidPacketIdError",
    "JavaStatus",
    "MinecraftJavaClient",
    "OutOfBoundsError",
    "PlayerRecord",
    "PlayerSample",
    "ProbeProtocol",
    "ProbeResult",
    "ProtocolViolationError",
    "QueryError",
    "QueryTimeoutError",
    "RaknetClient",
    "RuleRecord",
    "SendFailedError",
    "ServerInfo",
    "SocketBusyError",
    "SourceQueryClient",
    "TcpTransport",
    "UdpTransport",
    "VarIntTooLargeError",
    "WriteFailedError",
    "motd_strip_formatting",
    "query",
]
