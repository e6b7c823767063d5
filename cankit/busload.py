"""Bus load of CAN interfaces computed from the frames received on them."""

from __future__ import annotations

import contextlib
import datetime
import getopt
import re
import selectors
import signal
import socket
import struct
import sys
import time
from collections.abc import Sequence
from dataclasses import dataclass

from cankit.framelen import (
    CANFD_MAX_DLEN,
    CanFrame,
    FrameLengthMode,
    dbitrate_length,
    frame_length,
)

PROG = "canbusload"

MAXSOCK = 16  # max. number of CAN interfaces given on the command line
IFNAMSIZ = 16
MAX_BITRATE = 1000000
PERCENTRES = 5  # resolution in percent of the bar graph
NUMBAR = 100 // PERCENTRES  # number of bar graph elements

CAN_MTU = 16
CANFD_MTU = 72

_CSR_HOME = "\x1b[H"
_CLR_SCREEN = "\x1b[2J"
_FGRED = "\x1b[31m"
_FGBLUE = "\x1b[34m"
_ATTRESET = "\x1b[0m"

_MODE_LABELS = {
    FrameLengthMode.NO_BITSTUFFING: "ignore bitstuffing",
    FrameLengthMode.WORSTCASE: "worst case bitstuffing",
    FrameLengthMode.EXACT: "exact bitstuffing",
}

_STRTOL = re.compile(r"\s*([+-]?)(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")

_USAGE = """{prg} - monitor CAN bus load.

Usage: {prg} [options] <CAN interface>+
  (use CTRL-C to terminate {prg})

Options:
         -t  (show current time on the first line)
         -c  (colorize lines)
         -b  (show bargraph in {res}% resolution)
         -r  (redraw the terminal - similar to top)
         -i  (ignore bitstuffing in bandwidth calculation)
         -e  (exact calculation of stuffed bits)

Up to {maxsock} CAN interfaces with mandatory bitrate can be specified on the 
commandline in the form: <ifname>@<bitrate>[,<dbitrate>]

The bitrate is mandatory as it is needed to know the CAN bus bitrate to
calculate the bus load percentage based on the received CAN frames.
Due to the bitstuffing estimation the calculated busload may exceed 100%.
For each given interface the data is presented in one line which contains:

(interface) (received CAN frames) (used bits total) (used bits for payload)

Examples:

user$> canbusload can0@100000 can1@500000 can2@500000 can3@500000 -r -t -b -c

{prg} 2014-02-01 21:13:16 (worst case bitstuffing)
 can0@100000   805   74491  36656  74% |XXXXXXXXXXXXXX......|
 can1@500000   796   75140  37728  15% |XXX.................|
 can2@500000     0       0      0   0% |....................|
 can3@500000    47    4633   2424   0% |....................|

"""


class _MissingBitrate(ValueError):
    """The interface argument carries no '@<bitrate>' part."""


@dataclass(frozen=True)
class InterfaceSpec:
    """An interface argument: name, bitrate, data bitrate and the text after '@'."""

    name: str
    bitrate: int
    dbitrate: int
    bitrate_text: str


def _strtol(text: str) -> tuple[int, str]:
    """Leading number in C notation (decimal, 0x hex, 0 octal) and the rest."""
    match = _STRTOL.match(text)
    if not match:
        return 0, text
    digits = match.group(2)
    if digits[:2] in ("0x", "0X"):
        value = int(digits, 16)
    elif digits.startswith("0") and len(digits) > 1:
        value = int(digits, 8)
    else:
        value = int(digits, 10)
    if match.group(1) == "-":
        value = -value
    return value, text[match.end():]


def parse_interface_spec(text: str) -> InterfaceSpec:
    """Parse ``<ifname>@<bitrate>[,<dbitrate>]``; raises ValueError when invalid."""
    if len(text) >= IFNAMSIZ + len("@1000000") + 2:
        raise ValueError(f"name of CAN device '{text}' is too long!")
    name, sep, rest = text.partition("@")
    if not sep:
        raise _MissingBitrate(f"missing '@<bitrate>' in '{text}'")
    if len(name) >= IFNAMSIZ:
        raise ValueError(f"name of CAN device '{text}' is too long!")

    bitrate, remainder = _strtol(rest)
    if remainder.startswith(","):
        dbitrate, _ = _strtol(remainder[1:])
    else:
        dbitrate = bitrate

    if bitrate <= 0 or bitrate > MAX_BITRATE or dbitrate <= 0:
        raise ValueError(f"invalid bitrate for CAN device '{text}'!")
    return InterfaceSpec(name, bitrate, dbitrate, rest)


@dataclass
class BusStats:
    """Frame and bit counters of one interface for the current interval."""

    name: str
    bitrate: int
    dbitrate: int
    recv_frames: int = 0
    recv_bits_total: int = 0
    recv_bits_payload: int = 0
    recv_bits_dbitrate: int = 0

    def add_frame(self, frame: CanFrame, fd: bool, mode: FrameLengthMode) -> None:
        """Count a received frame; ``fd`` tells whether it came as a CAN FD frame."""
        self.recv_frames += 1
        self.recv_bits_payload += frame.len * 8
        # the receive buffer always has CAN FD size; classic frames carry no BRS
        self.recv_bits_dbitrate += dbitrate_length(frame, mode, True)
        self.recv_bits_total += frame_length(frame, mode, fd)

    def percent(self) -> int:
        """Bus load in percent, with data-phase bits weighted by the data bitrate."""
        if not self.bitrate:
            return 0
        arbitration = (
            (self.recv_bits_total - self.recv_bits_dbitrate) * 100
        ) // self.bitrate
        data = (self.recv_bits_dbitrate * 100) // self.dbitrate if self.dbitrate else 0
        return arbitration + data

    def reset(self) -> None:
        """Start a new interval."""
        self.recv_frames = 0
        self.recv_bits_total = 0
        self.recv_bits_dbitrate = 0
        self.recv_bits_payload = 0


def bargraph(percent: int) -> str:
    """Bar of NUMBAR elements, one 'X' per PERCENTRES percent, capped at 100%."""
    filled = max(0, min(percent, 100) // PERCENTRES)
    return "|" + "X" * filled + "." * (NUMBAR - filled) + "|"


def format_header(prg: str, mode: FrameLengthMode, now: datetime.datetime) -> str:
    """Title line with program name, local time and the bit stuffing mode."""
    label = _MODE_LABELS.get(mode, "unknown bitstuffing")
    return (
        f"{prg} {now.year:04d}-{now.month:02d}-{now.day:02d} "
        f"{now.hour:02d}:{now.minute:02d}:{now.second:02d} ({label})"
    )


def format_stats_line(
    stats: BusStats, name_width: int, bitrate_width: int, show_bargraph: bool
) -> str:
    """One line of the report for an interface."""
    percent = stats.percent()
    line = (
        f" {stats.name.rjust(name_width)}@{str(stats.bitrate).ljust(bitrate_width)}"
        f" {stats.recv_frames:5d} {stats.recv_bits_total:7d}"
        f" {stats.recv_bits_payload:6d} {stats.recv_bits_dbitrate:6d}"
        f" {percent:3d}%"
    )
    if show_bargraph:
        line += " " + bargraph(percent)
    return line


def _decode(buf: bytes) -> CanFrame:
    can_id, length, flags = struct.unpack_from("=IBB", buf)
    length = min(length, len(buf) - 8, CANFD_MAX_DLEN)
    return CanFrame(can_id, buf[8:8 + length], flags)


def _report(
    stats: list[BusStats],
    prg: str,
    mode: FrameLengthMode,
    redraw: bool,
    timestamp: bool,
    color: bool,
    show_bargraph: bool,
    name_width: int,
    bitrate_width: int,
) -> str:
    parts: list[str] = []
    if redraw:
        parts.append(_CSR_HOME)
    if timestamp:
        parts.append(format_header(prg, mode, datetime.datetime.now()) + " \n"[1:])
    for index, entry in enumerate(stats):
        if color:
            parts.append(_FGRED if index % 2 else _FGBLUE)
        parts.append(format_stats_line(entry, name_width, bitrate_width, show_bargraph))
        if color:
            parts.append(_ATTRESET)
        parts.append("\n")
        entry.reset()
    parts.append("\n")
    return "".join(parts)


def _terminate(signo: int, frame: object) -> None:
    raise SystemExit(0)


def _run(
    specs: list[InterfaceSpec],
    prg: str,
    mode: FrameLengthMode,
    redraw: bool,
    timestamp: bool,
    color: bool,
    show_bargraph: bool,
) -> int:
    sockets: list[socket.socket] = []
    selector = selectors.DefaultSelector()
    try:
        try:
            for index, spec in enumerate(specs):
                sock = socket.socket(socket.AF_CAN, socket.SOCK_RAW, socket.CAN_RAW)
                sockets.append(sock)
                # try to switch the socket into CAN FD mode
                with contextlib.suppress(OSError):
                    sock.setsockopt(socket.SOL_CAN_RAW, socket.CAN_RAW_FD_FRAMES, 1)
                sock.bind((spec.name,))
                selector.register(sock, selectors.EVENT_READ, index)
        except (OSError, AttributeError) as exc:
            print(f"socket: {exc}", file=sys.stderr)
            return 1

        stats = [BusStats(spec.name, spec.bitrate, spec.dbitrate) for spec in specs]
        name_width = max(len(spec.name) for spec in specs)
        bitrate_width = max(len(spec.bitrate_text) for spec in specs)

        if redraw:
            sys.stdout.write(_CLR_SCREEN)

        deadline = time.monotonic() + 1
        while True:
            timeout = deadline - time.monotonic()
            if timeout <= 0:
                sys.stdout.write(
                    _report(stats, prg, mode, redraw, timestamp, color,
                            show_bargraph, name_width, bitrate_width)
                )
                sys.stdout.flush()
                deadline = time.monotonic() + 1
                continue
            for key, _ in selector.select(timeout):
                try:
                    buf = key.fileobj.recv(CANFD_MTU)
                except OSError as exc:
                    print(f"read: {exc}", file=sys.stderr)
                    return 1
                if len(buf) < CAN_MTU:
                    print("read: incomplete CAN frame", file=sys.stderr)
                    return 1
                stats[key.data].add_frame(_decode(buf), len(buf) == CANFD_MTU, mode)
    except KeyboardInterrupt:
        return 0
    finally:
        selector.close()
        for sock in sockets:
            sock.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Command line entry point; returns the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    prg = PROG
    usage = _USAGE.format(prg=prg, res=PERCENTRES, maxsock=MAXSOCK)

    try:
        options, interfaces = getopt.gnu_getopt(args, "rtbcieh?")
    except getopt.GetoptError as exc:
        print(f"{prg}: {exc}", file=sys.stderr)
        sys.stderr.write(usage)
        return 1

    redraw = timestamp = color = show_bargraph = False
    mode = FrameLengthMode.WORSTCASE
    for opt, _ in options:
        if opt == "-r":
            redraw = True
        elif opt == "-t":
            timestamp = True
        elif opt == "-b":
            show_bargraph = True
        elif opt == "-c":
            color = True
        elif opt == "-i":
            mode = FrameLengthMode.NO_BITSTUFFING
        elif opt == "-e":
            mode = FrameLengthMode.EXACT
        else:
            sys.stderr.write(usage)
            return 1

    if not interfaces:
        sys.stderr.write(usage)
        return 0

    if len(interfaces) > MAXSOCK:
        print(f"More than {MAXSOCK} CAN devices given on commandline!")
        return 1

    specs: list[InterfaceSpec] = []
    for arg in interfaces:
        try:
            specs.append(parse_interface_spec(arg))
        except _MissingBitrate:
            sys.stderr.write(usage)
            return 1
        except ValueError as exc:
            print(exc)
            return 1

    for signame in ("SIGTERM", "SIGHUP"):
        signum = getattr(signal, signame, None)
        if signum is not None:
            signal.signal(signum, _terminate)

    return _run(specs, prg, mode, redraw, timestamp, color, show_bargraph)