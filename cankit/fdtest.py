"""Full-duplex CAN test: a generator on the host and an echo on the device under test.

With ``-g`` frames are generated and checked on the interface. Without it,
every frame received is sent back with the CAN id incremented (or replaced
by the pong id) and all data bytes incremented.
"""

from __future__ import annotations

import errno
import getopt
import os
import re
import signal
import socket
import struct
import sys
import time
from collections.abc import Sequence
from dataclasses import dataclass

from cankit.framelen import (
    CAN_EFF_FLAG,
    CAN_MAX_DLEN,
    CAN_RTR_FLAG,
    CAN_SFF_MASK,
    CANFD_BRS,
    CANFD_MAX_DLEN,
)

PROG = "canfdtest"

CAN_MSG_ID_PING = 0x77
CAN_MSG_ID_PONG = 0x78
CAN_MSG_LEN = 8
CAN_MSG_COUNT = 50
CAN_MSG_WAIT = 27

CAN_MTU = 16
CANFD_MTU = 72

_PF_CAN = 29
_SOCK_RAW = 3
_CAN_RAW = 1

_HEADER = struct.Struct("=IBBBB")
_FILTER = struct.Struct("=II")

_USAGE = """{prg} - Full-duplex test program (DUT and host part).
Usage: {prg} [options] <can-interface>

Options:
         -b       (enable CAN FD Bit Rate Switch)
         -d       (use CAN FD frames instead of classic CAN)
         -f COUNT (number of frames in flight, default: {count})
         -g       (generate messages)
         -i ID    (CAN ID to use for frames to DUT (ping), default {ping:x})
         -l COUNT (test loop count)
         -o ID    (CAN ID to use for frames to host (pong), default {pong:x})
         -s SIZE  (frame payload size in bytes)
         -v       (low verbosity)
         -vv      (high verbosity)
         -x       (ignore other frames on bus)

With the option '-g' CAN messages are generated and checked
on <can-interface>, otherwise all messages received on the
<can-interface> are sent back incrementing the CAN id and
all data bytes. The program can be aborted with ^C.

Examples:
\ton DUT:
{prg} -v can0
\ton Host:
{prg} -g -v can2
"""


@dataclass
class FdTestConfig:
    """Settings of a test run."""

    can_fd: bool = False
    bit_rate_switch: bool = False
    inflight_count: int = CAN_MSG_COUNT
    generate: bool = False
    can_id_ping: int = CAN_MSG_ID_PING
    can_id_pong: int | None = None
    test_loops: int = 0
    msg_len: int = CAN_MSG_LEN
    verbose: int = 0
    ignore_other: bool = False

    @property
    def has_pong_id(self) -> bool:
        return self.can_id_pong is not None

    @property
    def pong_id(self) -> int:
        """The id of answers: the given pong id, or the ping id plus one."""
        if self.can_id_pong is not None:
            return self.can_id_pong
        return self.can_id_ping + 1


@dataclass(frozen=True)
class FdFrame:
    """A frame exchanged in the test."""

    can_id: int
    data: bytes = b""
    flags: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", bytes(self.data))
        if len(self.data) > CANFD_MAX_DLEN:
            raise ValueError(
                f"payload of {len(self.data)} bytes exceeds {CANFD_MAX_DLEN}"
            )

    @property
    def len(self) -> int:
        return len(self.data)


class FrameMismatch(Exception):
    """A received frame differs from the one expected; the message is the report."""


def validate_config(config: FdTestConfig) -> None:
    """Raise ValueError for settings that cannot be used."""
    if config.bit_rate_switch and not config.can_fd:
        raise ValueError("Bit rate switch (-b) needs CAN FD (-d) to be enabled")
    if config.msg_len <= 0:
        raise ValueError("Message length must > 0")
    if config.can_fd:
        if config.msg_len > CANFD_MAX_DLEN:
            raise ValueError(
                f"Message length must be <= {CANFD_MAX_DLEN} bytes for CAN FD"
            )
    elif config.msg_len > CAN_MAX_DLEN:
        raise ValueError(
            f"Message length must be <= {CAN_MAX_DLEN} bytes for CAN 2.0B"
        )
    if config.inflight_count < 1:
        raise ValueError("Number of frames in flight must be > 0")


def format_frame(can_id: int, data: bytes, inc: int) -> str:
    """Frame as ``id: [len] bytes`` with ``inc`` added to every byte."""
    head = f"{can_id:04x}: "
    if can_id & CAN_RTR_FLAG:
        return head + "remote request"
    return head + f"[{len(data)}]" + "".join(
        f" {(byte + inc) & 0xFF:02x}" for byte in data
    )


def check_frame(frame: FdFrame, config: FdTestConfig) -> list[str]:
    """Problems of a frame received by the device under test; empty if none."""
    problems: list[str] = []
    if frame.can_id != config.can_id_ping:
        problems.append(f"Unexpected Message ID 0x{frame.can_id:04x}!")
    if frame.len != config.msg_len:
        problems.append(f"Unexpected Message length {frame.len}!")
    for previous, current in zip(frame.data, frame.data[1:]):
        if current != (previous + 1) & 0xFF:
            problems.append("Frame inconsistent!")
            problems.append(format_frame(frame.can_id, frame.data, 0))
            break
    return problems


def compare_frame(
    expected: FdFrame, received: FdFrame, inc: int, config: FdTestConfig
) -> None:
    """Raise FrameMismatch unless ``received`` is ``expected`` advanced by ``inc``."""
    expected_id = config.pong_id if inc else config.can_id_ping

    def report(title: str) -> str:
        return (
            f"{title}\n"
            f"expected: {format_frame(expected_id, expected.data, inc)}\n"
            f"received: {format_frame(received.can_id, received.data, 0)}"
        )

    if received.can_id != expected_id:
        raise FrameMismatch(report("Message ID mismatch!"))
    if received.len != expected.len:
        raise FrameMismatch(report("Message length mismatch!"))
    reports = [
        report(f"Databyte {index:x} mismatch!")
        for index, (want, got) in enumerate(zip(expected.data, received.data))
        if got != (want + inc) & 0xFF
    ]
    if reports:
        raise FrameMismatch("\n".join(reports))


def inc_frame(frame: FdFrame, config: FdTestConfig) -> FdFrame:
    """The answer to a frame: next id (or the pong id) and every byte plus one."""
    if config.has_pong_id:
        can_id = config.pong_id
    else:
        can_id = frame.can_id + 1
    return FdFrame(can_id, bytes((byte + 1) & 0xFF for byte in frame.data), frame.flags)


def make_ping_frame(counter: int, config: FdTestConfig) -> FdFrame:
    """Generated frame whose bytes count up from ``counter``."""
    data = bytes((counter + index) & 0xFF for index in range(config.msg_len))
    return FdFrame(config.can_id_ping, data)


def _encode(frame: FdFrame, fd: bool) -> bytes:
    size = CANFD_MAX_DLEN if fd else CAN_MAX_DLEN
    if frame.len > size:
        raise ValueError(f"payload of {frame.len} bytes exceeds {size}")
    header = _HEADER.pack(frame.can_id & 0xFFFFFFFF, frame.len, frame.flags & 0xFF, 0, 0)
    return header + frame.data.ljust(size, b"\0")


def _decode(buf: bytes) -> FdFrame:
    can_id, length, flags, _, _ = _HEADER.unpack_from(buf)
    length = min(length, len(buf) - _HEADER.size, CANFD_MAX_DLEN)
    return FdFrame(can_id, buf[_HEADER.size:_HEADER.size + length], flags)


class _LinkError(Exception):
    """Sending or receiving a frame failed."""


class _Stop(Exception):
    def __init__(self, signo: int) -> None:
        super().__init__(signo)
        self.signo = signo


def _millisleep(msecs: int) -> None:
    time.sleep(msecs / 1000)


def _echo_progress(value: int) -> None:
    if value == 0xFF:
        sys.stdout.write(".")
        sys.stdout.flush()


class _Session:
    def __init__(self, sock: socket.socket, config: FdTestConfig) -> None:
        self.sock = sock
        self.config = config
        self.mtu = CANFD_MTU if config.can_fd else CAN_MTU

    def recv(self) -> FdFrame:
        try:
            buf = self.sock.recv(self.mtu)
        except OSError as exc:
            raise _LinkError(f"recv failed: {exc}") from exc
        if len(buf) != self.mtu:
            raise _LinkError(f"recv returned {len(buf)}")
        return _decode(buf)

    def send(self, frame: FdFrame) -> None:
        flags = frame.flags | CANFD_BRS if self.config.bit_rate_switch else frame.flags
        buf = _encode(FdFrame(frame.can_id, frame.data, flags), self.config.can_fd)
        while True:
            try:
                sent = self.sock.send(buf)
            except OSError as exc:
                if exc.errno != errno.ENOBUFS:
                    raise _LinkError(f"send failed: {exc}") from exc
                if self.config.verbose:
                    sys.stdout.write("N")
                    sys.stdout.flush()
                continue
            if sent != len(buf):
                raise _LinkError(f"send returned {sent}")
            return

    def echo_dut(self) -> bool:
        """Echo frames until stopped; True when the last frame checked had problems."""
        config = self.config
        frame_count = 0
        failed = False
        while True:
            frame = self.recv()
            frame_count += 1
            if config.verbose == 1:
                _echo_progress(frame.data[0] if frame.data else 0)
            elif config.verbose > 1:
                print(format_frame(frame.can_id, frame.data, 0))

            problems = check_frame(frame, config)
            for line in problems:
                print(line)
            failed = bool(problems)
            self.send(inc_frame(frame, config))

            # force interlacing of the frames sent by both sides
            if frame_count == CAN_MSG_WAIT:
                frame_count = 0
                _millisleep(3)
        return failed

    def echo_gen(self) -> bool:
        """Generate and check frames; True when a mismatch was found."""
        config = self.config
        count = config.inflight_count
        tx_frames: list[FdFrame | None] = [None] * count
        recv_tx = [False] * count
        counter = 0
        send_pos = recv_rx_pos = recv_tx_pos = unprocessed = loops = 0
        failed = False
        running = True

        def compare(expected: FdFrame | None, received: FdFrame, inc: int) -> bool:
            if expected is None:
                print("RX before TX!")
                print(format_frame(received.can_id, received.data, 0))
                return False
            try:
                compare_frame(expected, received, inc, config)
            except FrameMismatch as exc:
                print(exc)
                return False
            return True

        while running:
            if unprocessed < count:
                frame = make_ping_frame(counter, config)
                tx_frames[send_pos] = frame
                recv_tx[send_pos] = False
                self.send(frame)
                send_pos = (send_pos + 1) % count
                unprocessed += 1
                if config.verbose == 1:
                    _echo_progress(counter)
                counter = (counter + 1) & 0xFF
                _millisleep(3 if counter % 33 == 0 else 1)
                continue

            rx_frame = self.recv()
            if config.verbose > 1:
                print(format_frame(rx_frame.can_id, rx_frame.data, 0))

            # own frame
            if rx_frame.can_id == config.can_id_ping:
                ok = compare(tx_frames[recv_tx_pos], rx_frame, 0)
                failed = not ok
                running = running and ok
                recv_tx[recv_tx_pos] = True
                recv_tx_pos = (recv_tx_pos + 1) % count
                continue

            if not recv_tx[recv_rx_pos]:
                print("RX before TX!")
                print(format_frame(rx_frame.can_id, rx_frame.data, 0))
                running = False
            ok = compare(tx_frames[recv_rx_pos], rx_frame, 1)
            failed = not ok
            running = running and ok
            recv_rx_pos = (recv_rx_pos + 1) % count

            loops += 1
            if config.test_loops and loops >= config.test_loops:
                break
            unprocessed -= 1

        print(f"\nTest messages sent and received: {loops}")
        return failed


def _atoi(text: str) -> int:
    match = re.match(r"\s*[+-]?\d+", text)
    return int(match.group()) if match else 0


def _strtoul_hex(text: str) -> int:
    match = re.match(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]*)", text)
    if not match or not match.group(2):
        return 0
    value = int(match.group(2), 16)
    return -value if match.group(1) == "-" else value


def _open_socket(config: FdTestConfig, ifname: str) -> socket.socket:
    sock = socket.socket(socket.AF_CAN, socket.SOCK_RAW, socket.CAN_RAW)
    try:
        if config.generate:
            sock.setsockopt(socket.SOL_CAN_RAW, socket.CAN_RAW_RECV_OWN_MSGS, 1)
        if config.can_fd:
            sock.setsockopt(socket.SOL_CAN_RAW, socket.CAN_RAW_FD_FRAMES, 1)
        socket.if_nametoindex(ifname)
        sock.bind((ifname,))
        if config.ignore_other:
            mask = CAN_EFF_FLAG | CAN_RTR_FLAG | CAN_SFF_MASK
            ids = [config.can_id_ping, config.pong_id][: 1 + int(config.generate)]
            filters = b"".join(_FILTER.pack(can_id, mask) for can_id in ids)
            sock.setsockopt(socket.SOL_CAN_RAW, socket.CAN_RAW_FILTER, filters)
    except BaseException:
        sock.close()
        raise
    return sock


def _signal_handler(signo: int, frame: object) -> None:
    raise _Stop(signo)


def main(argv: Sequence[str] | None = None) -> int:
    """Command line entry point; returns the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    usage = _USAGE.format(
        prg=PROG, count=CAN_MSG_COUNT, ping=CAN_MSG_ID_PING, pong=CAN_MSG_ID_PONG
    )

    try:
        options, positional = getopt.gnu_getopt(args, "bdf:gi:l:o:s:vx?")
    except getopt.GetoptError as exc:
        print(f"{PROG}: {exc}", file=sys.stderr)
        sys.stderr.write(usage)
        return 1

    config = FdTestConfig()
    for opt, value in options:
        if opt == "-b":
            config.bit_rate_switch = True
        elif opt == "-d":
            config.can_fd = True
        elif opt == "-f":
            config.inflight_count = _atoi(value)
        elif opt == "-g":
            config.generate = True
        elif opt == "-i":
            config.can_id_ping = _strtoul_hex(value) & CAN_SFF_MASK
        elif opt == "-l":
            config.test_loops = _atoi(value)
        elif opt == "-o":
            config.can_id_pong = _strtoul_hex(value) & CAN_SFF_MASK
        elif opt == "-s":
            config.msg_len = _atoi(value)
        elif opt == "-v":
            config.verbose += 1
        elif opt == "-x":
            config.ignore_other = True
        else:
            sys.stderr.write(usage)
            return 1

    try:
        validate_config(config)
    except ValueError as exc:
        print(exc)
        return 1

    if len(positional) != 1:
        sys.stderr.write(usage)
        return 1
    ifname = positional[0]

    print(
        f"interface = {ifname}, family = {_PF_CAN}, "
        f"type = {_SOCK_RAW}, proto = {_CAN_RAW}"
    )

    try:
        sock = _open_socket(config, ifname)
    except (OSError, AttributeError) as exc:
        print(f"socket: {exc}", file=sys.stderr)
        return 1

    signums = [
        getattr(signal, name)
        for name in ("SIGTERM", "SIGHUP", "SIGINT")
        if hasattr(signal, name)
    ]
    previous = {signum: signal.signal(signum, _signal_handler) for signum in signums}

    session = _Session(sock, config)
    exit_sig = 0
    failed = True
    try:
        failed = session.echo_gen() if config.generate else session.echo_dut()
    except _Stop as stop:
        exit_sig = stop.signo
    except _LinkError as exc:
        print(exc, file=sys.stderr)
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
        sock.close()

    if config.verbose:
        print("Exiting...")
    sys.stdout.flush()

    if exit_sig:
        signal.signal(exit_sig, signal.SIG_DFL)
        os.kill(os.getpid(), exit_sig)

    return 1 if failed else 0