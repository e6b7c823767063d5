"""Number of bits a CAN or CAN FD frame occupies on the wire.

Three ways of counting stuff bits are offered: none at all, a worst-case
estimate and an exact count. The worst-case bit count is

    (34 + 8n - 1)/4 + 34 + 8n + 13 for SFF frames (11 bit CAN-ID) => 55 + 10n
    (54 + 8n - 1)/4 + 54 + 8n + 13 for EFF frames (29 bit CAN-ID) => 80 + 10n

where n is the number of payload bytes ("Controller Area Network (CAN)
schedulability analysis: Refuted, revisited and revised", Real-Time Syst
(2007) 35:239-272).
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass

CAN_EFF_FLAG = 0x80000000
CAN_RTR_FLAG = 0x40000000
CAN_ERR_FLAG = 0x20000000
CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF

CANFD_BRS = 0x01
CANFD_ESI = 0x02

CAN_MAX_DLEN = 8
CANFD_MAX_DLEN = 64

CRC15_POLY = 0x4599
_CRC15_MASK = 0x7FFF

# CRC delimiter, ACK slot and ACK delimiter; end of frame; interframe space
_TRAILER_BITS = 3 + 7 + 3


class FrameLengthMode(enum.Enum):
    """How stuff bits are taken into account."""

    NO_BITSTUFFING = 0
    WORSTCASE = 1
    EXACT = 2


@dataclass(frozen=True)
class CanFrame:
    """A CAN or CAN FD frame: identifier with flag bits, payload and FD flags."""

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

    @property
    def is_extended(self) -> bool:
        return bool(self.can_id & CAN_EFF_FLAG)

    @property
    def is_remote(self) -> bool:
        return bool(self.can_id & CAN_RTR_FLAG)


def crc15(bits: Iterable[int]) -> int:
    """CAN CRC-15 (polynomial 0x4599, initial value 0) over a bit sequence."""
    crc = 0
    for bit in bits:
        feedback = (bool(bit)) ^ bool(crc & 0x4000)
        crc = (crc << 1) & _CRC15_MASK
        if feedback:
            crc ^= CRC15_POLY
    return crc


def _field(value: int, width: int) -> list[int]:
    return [(value >> shift) & 1 for shift in range(width - 1, -1, -1)]


def _crc_covered_bits(frame: CanFrame) -> list[int]:
    """Bits from start of frame up to the end of the data field."""
    rtr = 1 if frame.is_remote else 0
    dlc = frame.len & 0xF
    bits = [0]  # start of frame
    if frame.is_extended:
        can_id = frame.can_id & CAN_EFF_MASK
        bits += _field(can_id >> 18, 11)  # base identifier
        bits += [1, 1]  # SRR, IDE
        bits += _field(can_id & 0x3FFFF, 18)  # identifier extension
        bits += [rtr, 0, 0]  # RTR, r1, r0
    else:
        bits += _field(frame.can_id & CAN_SFF_MASK, 11)
        bits += [rtr, 0, 0]  # RTR, IDE, r0
    bits += _field(dlc, 4)
    for byte in frame.data:
        bits += _field(byte, 8)
    return bits


def _count_stuffed_bits(bits: list[int]) -> int:
    end = len(bits)

    def window(pos: int) -> int:
        value = 0
        for offset in range(5):
            index = pos + offset
            value = (value << 1) | (bits[index] if index < end else 0)
        return value

    mask = 0x1F
    lookfor = 0
    pos = 0
    stuffed = 0
    while pos < end:
        # alternate between looking for a run of zeros and a run of ones
        lookfor = 0 if lookfor else mask
        change = (window(pos) & mask) ^ lookfor
        if change:
            pos += 5 - change.bit_length()
            mask = 0x1F
        else:
            pos += 5 if mask == 0x1F else 4
            if pos <= end:
                stuffed += 1
                # the stuffed bit starts the next run, so four more suffice
                mask = 0x1E
    return stuffed


def exact_length(frame: CanFrame) -> int:
    """Bits of a Classical CAN frame on the wire with stuff bits counted exactly."""
    if frame.len > CAN_MAX_DLEN:
        raise ValueError(
            f"exact length needs a Classical CAN frame, got {frame.len} bytes"
        )
    bits = _crc_covered_bits(frame)
    bits += _field(crc15(bits), 15)
    return len(bits) + _count_stuffed_bits(bits) + _TRAILER_BITS


def frame_length(frame: CanFrame, mode: FrameLengthMode, fd: bool) -> int:
    """Bits a frame needs on the wire, including interframe space.

    For CAN FD frames the count is an approximation and the exact mode
    is not supported (it yields 0).
    """
    eff = frame.is_extended
    if fd:
        if mode is FrameLengthMode.NO_BITSTUFFING:
            return (
                1
                + (29 if eff else 11)
                + (21 if frame.len >= 16 else 17)
                + 5  # r1, ide, edl, r0, brs/crcdel
                + 12  # trail
                + frame.len * 8
            )
        if mode is FrameLengthMode.WORSTCASE:
            return frame_length(frame, FrameLengthMode.NO_BITSTUFFING, fd) * 5 // 4
        return 0

    if mode is FrameLengthMode.NO_BITSTUFFING:
        return (67 if eff else 47) + frame.len * 8
    if mode is FrameLengthMode.WORSTCASE:
        return (80 if eff else 55) + frame.len * 10
    if mode is FrameLengthMode.EXACT:
        return exact_length(frame)
    return 0


def dbitrate_length(frame: CanFrame, mode: FrameLengthMode, fd: bool) -> int:
    """Bits of a CAN FD frame sent at the data bitrate (0 without bit rate switch)."""
    if not fd or not frame.flags & CANFD_BRS:
        return 0
    if mode is FrameLengthMode.NO_BITSTUFFING:
        return (
            1  # brs/crcdel
            + 1  # esi
            + 4  # dlc
            + (21 if frame.len >= 16 else 17)
            + frame.len * 8
        )
    if mode is FrameLengthMode.WORSTCASE:
        return dbitrate_length(frame, FrameLengthMode.NO_BITSTUFFING, fd) * 5 // 4
    return 0