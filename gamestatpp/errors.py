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
"""Exceptions raised by the probe clients and their transports."""


class QueryError(Exception):
    """Base class for every error raised while querying a game server."""


class OutOfBoundsError(QueryError):
    """A fixed-size read needed more bytes than the buffer holds."""


class VarIntTooLargeError(QueryError):
    """A VarInt ran past its 5 byte maximum."""


class ProtocolViolationError(QueryError):
    """The server answered with something the protocol does not allow."""


class InvalidHeaderError(ProtocolViolationError):
    """Unexpected leading/discriminant byte."""


class InvalidPacketIdError(ProtocolViolationError):
    """Unexpected Minecraft packet id."""


class ChallengeLoopDetectedError(ProtocolViolationError):
    """The server kept answering with challenges."""


class SocketBusyError(QueryError):
    """
    A request is already pending on this transport.

    Transports never queue requests. Use another client instance to run
    queries concurrently.
    """


class QueryTimeoutError(QueryError, TimeoutError):
    """No (complete) response arrived before the deadline."""


class SendFailedError(QueryError, OSError):
    """The datagram could not be handed to the socket."""


class WriteFailedError(QueryError, OSError):
    """The payload could not be written to the TCP connection."""
