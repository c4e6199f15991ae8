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
import struct

from .errors import OutOfBoundsError, VarIntTooLargeError

_U8 = struct.Struct("<B")
_I16LE = struct.Struct("<h")
_U16LE = struct.Struct("<H")
_I32LE = struct.Struct("<i")
_U64LE = struct.Struct("<Q")
_F32LE = struct.Struct("<f")
_U16BE = struct.Struct(">H")


class ByteCursor:
    """
    Sequential reader over an immutable byte buffer.

    The Source engine and GameSpy protocols are little endian with
    NUL-terminated strings, Minecraft and RakNet use big endian integers and
    VarInt framing. Both families are read through this one cursor.

    Every read either advances the offset by exactly the bytes it consumed or
    raises, leaving the offset untouched. The buffer is never copied.
    """

    VARINT_MAX_BYTES = 5
    """a VarInt encodes at most 32 bits, so 5 groups of 7 bits"""

    def __init__(self, buffer: bytes | bytearray, offset: int = 0) -> None:
        self._buffer = buffer
        self._offset = offset

    @property
    def offset(self) -> int:
        """current read position"""
        return self._offset

    def remaining(self) -> bool:
        """True while at least one unread byte is left."""
        return self._offset < len(self._buffer)

    def remaining_bytes(self) -> int:
        return len(self._buffer) - self._offset

    def _check_bounds(self, needed: int) -> None:
        if self._offset + needed > len(self._buffer):
            raise OutOfBoundsError(
                f"Out of bounds: need {needed}, have {self.remaining_bytes()}"
            )

    def _unpack(self, fmt: struct.Struct):
        self._check_bounds(fmt.size)
        value = fmt.unpack_from(self._buffer, self._offset)[0]
        self._offset += fmt.size
        return value

    def u8(self) -> int:
        return self._unpack(_U8)

    def i16le(self) -> int:
        return self._unpack(_I16LE)

    def u16le(self) -> int:
        return self._unpack(_U16LE)

    def i32le(self) -> int:
        return self._unpack(_I32LE)

    def u64le(self) -> int:
        return self._unpack(_U64LE)

    def f32le(self) -> float:
        return self._unpack(_F32LE)

    def u16be(self) -> int:
        """Unsigned 16-bit big endian, used for ports and RakNet string lengths."""
        return self._unpack(_U16BE)

    def peek(self) -> int:
        """Return the next byte without consuming it."""
        self._check_bounds(1)
        return self._buffer[self._offset]

    def read(self, length: int | None = None) -> bytes:
        """
        Read a raw slice.

        :param length: Number of bytes to read. Reads up to the end of the buffer if omitted.
        """
        if length is None:
            length = self.remaining_bytes()
        if length < 0:
            raise OutOfBoundsError(f"Out of bounds: negative length {length}")
        self._check_bounds(length)
        start = self._offset
        self._offset += length
        return bytes(self._buffer[start : self._offset])

    def c_string(self, encoding: str = "utf-8", strict: bool = False) -> str:
        """
        Read a NUL-terminated string and skip the terminator.

        A missing terminator is not an error: an empty string is returned and
        the offset stays where it was.

        :param encoding: Text encoding, GameSpy servers send latin-1.
        :param strict: Raise `OutOfBoundsError` instead when the terminator is missing.
        """
        end = self._buffer.find(b"\x00", self._offset)
        if end == -1:
            if strict:
                raise OutOfBoundsError(f"Out of bounds: no string terminator after offset {self._offset}")
            return ""
        value = bytes(self._buffer[self._offset : end]).decode(encoding, errors="replace")
        self._offset = end + 1
        return value

    def varint(self) -> int:
        """
        Read a Minecraft protocol VarInt.

        See https://wiki.vg/Protocol#VarInt_and_VarLong
        """
        start = self._offset
        result = 0
        for i in range(self.VARINT_MAX_BYTES):
            try:
                byte = self.u8()
            except OutOfBoundsError:
                self._offset = start
                raise
            result |= (byte & 0x7F) << 7 * i
            if not byte & 0x80:
                break
        else:
            self._offset = start
            raise VarIntTooLargeError("VarInt is too big")

        # two's complement for the 32-bit range
        result &= 0xFFFFFFFF
        if result & 0x80000000:
            result -= 1 << 32
        return result

    def var_string(self, encoding: str = "utf-8") -> str:
        """Read a VarInt length prefixed string."""
        start = self._offset
        length = self.varint()
        try:
            return self.read(length).decode(encoding)
        except OutOfBoundsError:
            self._offset = start
            raise
