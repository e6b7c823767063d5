"""ASCII command protocol for the CAN broadcast manager.

Commands have the form ``< interface command ival_s ival_us can_id can_dlc
[data]* >`` with ``can_id`` and data in hexadecimal. Transmit commands are
'A'dd, 'U'pdate, 'D'elete and 'S'end; receive commands are 'R'eceive
setup, 'F'ilter setup and 'X' for delete. Received frames are reported as
``< interface can_id can_dlc [data]* >``.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass

PORT = 28600
MAXLEN = 100
IFNAMSIZ = 16
CAN_MAX_DLEN = 8

_U32 = 0xFFFFFFFF
_ULONG = 0xFFFFFFFFFFFFFFFF

_WS = re.compile(r"\s*")
_DEC = re.compile(r"[+-]?\d+")
_HEX = re.compile(r"[+-]?(?:0[xX][0-9a-fA-F]+|[0-9a-fA-F]+)")
_WORD = re.compile(r"\S+")


class BcmOpcode(enum.IntEnum):
    """Broadcast manager message opcodes."""

    TX_SETUP = 1
    TX_DELETE = 2
    TX_READ = 3
    TX_SEND = 4
    RX_SETUP = 5
    RX_DELETE = 6
    RX_READ = 7
    TX_STATUS = 8
    TX_EXPIRED = 9
    RX_STATUS = 10
    RX_TIMEOUT = 11
    RX_CHANGED = 12


class BcmFlags(enum.IntFlag):
    """Broadcast manager message flags."""

    SETTIMER = 0x0001
    STARTTIMER = 0x0002
    TX_COUNTEVT = 0x0004
    TX_ANNOUNCE = 0x0008
    TX_CP_CAN_ID = 0x0010
    RX_FILTER_ID = 0x0020
    RX_CHECK_DLC = 0x0040
    RX_NO_AUTOTIMER = 0x0080
    RX_ANNOUNCE_RESUME = 0x0100
    TX_RESET_MULTI_IDX = 0x0200
    RX_RTR_FRAME = 0x0400
    CAN_FD_FRAME = 0x0800


_COMMANDS: dict[str, tuple[BcmOpcode, BcmFlags]] = {
    "S": (BcmOpcode.TX_SEND, BcmFlags(0)),
    "A": (BcmOpcode.TX_SETUP, BcmFlags.SETTIMER | BcmFlags.STARTTIMER),
    "U": (BcmOpcode.TX_SETUP, BcmFlags(0)),
    "D": (BcmOpcode.TX_DELETE, BcmFlags(0)),
    "R": (BcmOpcode.RX_SETUP, BcmFlags.SETTIMER),
    "F": (BcmOpcode.RX_SETUP, BcmFlags.RX_FILTER_ID | BcmFlags.SETTIMER),
    "X": (BcmOpcode.RX_DELETE, BcmFlags(0)),
}


@dataclass(frozen=True)
class BcmCommand:
    """A parsed command, ready to become a single-frame broadcast manager message."""

    ifname: str
    command: str
    opcode: BcmOpcode
    flags: BcmFlags
    ival2_sec: int
    ival2_usec: int
    can_id: int
    data: bytes
    nframes: int = 1


class _Scanner:
    """Reads whitespace-separated fields the way the command format expects."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def _skip(self) -> None:
        self.pos = _WS.match(self.text, self.pos).end()

    def literal(self, char: str) -> bool:
        self._skip()
        if self.text.startswith(char, self.pos):
            self.pos += len(char)
            return True
        return False

    def word(self, maxlen: int) -> str | None:
        self._skip()
        match = _WORD.match(self.text, self.pos)
        if not match:
            return None
        value = match.group()[:maxlen]
        self.pos += len(value)
        return value

    def char(self) -> str | None:
        self._skip()
        if self.pos >= len(self.text):
            return None
        value = self.text[self.pos]
        self.pos += 1
        return value

    def number(self, pattern: re.Pattern[str], base: int) -> int | None:
        self._skip()
        match = pattern.match(self.text, self.pos)
        if not match:
            return None
        self.pos = match.end()
        return int(match.group(), base)


def parse_command(text: str) -> BcmCommand:
    """Parse one ``< ... >`` command; raises ValueError for malformed ones."""
    scanner = _Scanner(text)
    if not scanner.literal("<"):
        raise ValueError(f"command must start with '<': {text!r}")

    readers = [
        lambda: scanner.word(IFNAMSIZ - 1),
        scanner.char,
        lambda: scanner.number(_DEC, 10),
        lambda: scanner.number(_DEC, 10),
        lambda: scanner.number(_HEX, 16),
        lambda: scanner.number(_DEC, 10),
    ] + [lambda: scanner.number(_HEX, 16)] * CAN_MAX_DLEN

    values: list[int | str] = []
    for read in readers:
        value = read()
        if value is None:
            break
        values.append(value)

    if len(values) < 6:
        raise ValueError(f"incomplete command {text!r}")
    dlc = int(values[5]) & 0xFF
    if dlc > CAN_MAX_DLEN:
        raise ValueError(f"data length {dlc} exceeds {CAN_MAX_DLEN}")
    if len(values) != 6 + dlc:
        raise ValueError(f"expected {dlc} data bytes in {text!r}")

    command = str(values[1])
    try:
        opcode, flags = _COMMANDS[command]
    except KeyError:
        raise ValueError(f"unknown command '{command}'.") from None

    return BcmCommand(
        ifname=str(values[0]),
        command=command,
        opcode=opcode,
        flags=flags,
        ival2_sec=int(values[2]) & _ULONG,
        ival2_usec=int(values[3]) & _ULONG,
        can_id=int(values[4]) & _U32,
        data=bytes(int(value) & 0xFF for value in values[6:]),
    )


class MessageAssembler:
    """Collects characters of a stream into ``< ... >`` messages.

    Characters before a '<' are dropped, and a message that grows beyond
    the buffer size is discarded.
    """

    def __init__(self) -> None:
        self._buf: list[str] = []

    def feed(self, char: str) -> str | None:
        """Add one character; returns a complete message when '>' closes one."""
        if len(char) != 1:
            raise ValueError(f"expected a single character, got {char!r}")
        if not self._buf:
            if char == "<":
                self._buf.append(char)
            return None
        if len(self._buf) > MAXLEN - 2:
            self._buf = []
            return None
        self._buf.append(char)
        if char != ">":
            return None
        message = "".join(self._buf)
        self._buf = []
        return message


def format_rx_message(ifname: str, can_id: int, data: bytes) -> str:
    """Report of a received frame; on the wire it is followed by a NUL byte."""
    payload = "".join(f"{byte:02X} " for byte in data)
    return f"< {ifname} {can_id & _U32:03X} {len(data)} {payload}>"