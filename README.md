# cankit

Tools and a small library for working with Controller Area Network (CAN)
and CAN FD traffic.

## What it offers

- **Frame length on the wire** (`cankit.framelen`): the number of bits a
  Classical CAN or CAN FD frame occupies on the bus, including the
  inter-frame space. Stuff bits can be ignored, estimated as a worst case, or
  counted exactly from the frame content and its CRC-15
  (`CanFrame`, `FrameLengthMode`, `frame_length`, `dbitrate_length`,
  `exact_length`, `crc15`). Exact counting is available for Classical CAN
  frames only; for CAN FD frames `frame_length` returns 0 in that mode.
- **Bus load monitoring** (`cankit.busload`): per-interface frame and bit
  counts with a load percentage, data-phase bits weighted by the data
  bitrate, and an optional bar graph (`InterfaceSpec`,
  `parse_interface_spec`, `BusStats`, `bargraph`, `format_header`,
  `format_stats_line`).
- **Broadcast manager text protocol** (`cankit.bcm`): parsing of
  `< ifname cmd ival_s ival_us can_id dlc [data]* >` commands into
  `BcmCommand` values with their `BcmOpcode` and `BcmFlags`
  (`parse_command`), collecting such messages from a character stream
  (`MessageAssembler.feed`), and formatting of received frames
  (`format_rx_message`). Commands: `S` send, `A` add, `U` update,
  `D` delete, `R` receive setup, `F` filter setup, `X` receive delete.
- **Full-duplex frame testing** (`cankit.fdtest`): ping/pong frame
  generation and checking between a host and a device under test
  (`FdTestConfig`, `FdFrame`, `validate_config`, `make_ping_frame`,
  `inc_frame`, `check_frame`, `compare_frame`, `FrameMismatch`).

## Example

```python
from cankit.framelen import CanFrame, FrameLengthMode, frame_length

frame = CanFrame(0x123, bytes([0x11, 0x22, 0x33]))
frame_length(frame, FrameLengthMode.WORSTCASE, fd=False)  # 55 + 10 * 3 = 85
frame_length(frame, FrameLengthMode.EXACT, fd=False)
```

## Installation

```
pip install .
```

For the tests:

```
pip install .[test]
pytest
```

## Commands

Both commands talk to CAN interfaces through Linux SocketCAN.

### Bus load

```
cankit-busload -r -t -b -c can0@500000 can1@500000,2000000
```

Each interface is given as `<ifname>@<bitrate>[,<data bitrate>]`, up to 16
of them; the bitrate must be between 1 and 1000000. Once a second a line per
interface is printed. `-t` prints the time and the bit stuffing mode, `-c`
colours the lines, `-b` draws a bar graph, `-r` redraws the screen, `-i`
ignores stuff bits and `-e` counts them exactly.

### Full-duplex test

On the device under test:

```
cankit-fdtest -v can0
```

On the host:

```
cankit-fdtest -g -v can1
```

Options: `-b` (bit rate switch, needs `-d`), `-d` (CAN FD frames),
`-f <count>` (frames in flight, default 50), `-g` (generate),
`-i <id>` / `-o <id>` (ping and pong CAN IDs in hex; ping defaults to 77,
pong to the ping ID plus one), `-l <count>` (test loops), `-s <size>`
(payload size, default 8), `-v`/`-vv` (verbosity) and `-x` (ignore other
frames on the bus).

## What it does not do

- There is no bit timing calculation: the package neither knows CAN
  controller limits nor computes prescaler and segment values.
- `cankit.bcm` only parses and formats the text protocol. It runs no
  network server and does not open broadcast manager sockets.