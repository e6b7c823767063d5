import datetime

import pytest

from cankit.busload import (
    NUMBAR,
    BusStats,
    InterfaceSpec,
    bargraph,
    format_header,
    format_stats_line,
    main,
    parse_interface_spec,
)
from cankit.framelen import CANFD_BRS, CanFrame, FrameLengthMode, frame_length


def test_parse_spec_plain():
    spec = parse_interface_spec("can0@500000")
    assert spec == InterfaceSpec("can0", 500000, 500000, "500000")


def test_parse_spec_with_data_bitrate():
    spec = parse_interface_spec("can1@500000,2000000")
    assert spec.name == "can1"
    assert spec.bitrate == 500000
    assert spec.dbitrate == 2000000
    assert spec.bitrate_text == "500000,2000000"


def test_parse_spec_hex_bitrate():
    spec = parse_interface_spec("vcan0@0x7a120")
    assert spec.bitrate == int("7a120", 16)
    assert spec.dbitrate == spec.bitrate


@pytest.mark.parametrize(
    "text", ["can0@0", "can0@2000000", "can0@-5", "can0@abc", "can0@500000,0"]
)
def test_parse_spec_invalid_bitrate(text):
    with pytest.raises(ValueError, match="invalid bitrate"):
        parse_interface_spec(text)


def test_parse_spec_missing_bitrate():
    with pytest.raises(ValueError):
        parse_interface_spec("can0")


def test_parse_spec_name_too_long():
    with pytest.raises(ValueError, match="too long"):
        parse_interface_spec("averyverylongname@500000")


def test_add_frame_counts_bits():
    frame = CanFrame(0x123, bytes(range(8)))
    stats = BusStats("can0", 500000, 500000)
    stats.add_frame(frame, False, FrameLengthMode.WORSTCASE)
    stats.add_frame(frame, False, FrameLengthMode.WORSTCASE)
    assert stats.recv_frames == 2
    assert stats.recv_bits_payload == 2 * 8 * 8
    assert stats.recv_bits_total == 2 * frame_length(frame, FrameLengthMode.WORSTCASE, False)
    assert stats.recv_bits_dbitrate == 0


def test_add_fd_frame_with_brs_counts_data_phase():
    frame = CanFrame(0x123, bytes(16), CANFD_BRS)
    stats = BusStats("can0", 500000, 2000000)
    stats.add_frame(frame, True, FrameLengthMode.NO_BITSTUFFING)
    assert 0 < stats.recv_bits_dbitrate < stats.recv_bits_total


def test_percent_full_load():
    frame = CanFrame(0x123, bytes(8))
    bits = frame_length(frame, FrameLengthMode.NO_BITSTUFFING, False)
    stats = BusStats("can0", bits * 1000, bits * 1000)
    for _ in range(1000):
        stats.add_frame(frame, False, FrameLengthMode.NO_BITSTUFFING)
    assert stats.percent() == 100


def test_faster_data_bitrate_lowers_load():
    frame = CanFrame(0x123, bytes(64), CANFD_BRS)
    slow = BusStats("can0", 500000, 500000)
    fast = BusStats("can0", 500000, 4000000)
    for _ in range(200):
        slow.add_frame(frame, True, FrameLengthMode.WORSTCASE)
        fast.add_frame(frame, True, FrameLengthMode.WORSTCASE)
    assert fast.percent() < slow.percent()


def test_percent_without_bitrate_is_zero():
    stats = BusStats("can0", 0, 0, recv_frames=5, recv_bits_total=500)
    assert stats.percent() == 0


def test_reset_keeps_configuration():
    stats = BusStats("can0", 250000, 250000)
    stats.add_frame(CanFrame(0x1, b"\x01"), False, FrameLengthMode.WORSTCASE)
    stats.reset()
    assert stats == BusStats("can0", 250000, 250000)


def test_bargraph_bounds():
    assert bargraph(0) == "|" + "." * NUMBAR + "|"
    assert bargraph(100) == "|" + "X" * NUMBAR + "|"
    assert bargraph(250) == bargraph(100)
    assert bargraph(-3) == bargraph(0)


def test_bargraph_steps():
    assert bargraph(7).count("X") == 1
    assert len(bargraph(42)) == NUMBAR + 2


def test_format_header_usage_example():
    now = datetime.datetime(2014, 2, 1, 21, 13, 16)
    assert (
        format_header("canbusload", FrameLengthMode.WORSTCASE, now)
        == "canbusload 2014-02-01 21:13:16 (worst case bitstuffing)"
    )


def test_format_header_modes():
    now = datetime.datetime(2014, 2, 1, 21, 13, 16)
    assert format_header("x", FrameLengthMode.NO_BITSTUFFING, now).endswith(
        "(ignore bitstuffing)"
    )
    assert format_header("x", FrameLengthMode.EXACT, now).endswith("(exact bitstuffing)")


def test_format_stats_line_usage_example():
    stats = BusStats(
        "can0", 100000, 100000,
        recv_frames=805, recv_bits_total=74491, recv_bits_payload=36656,
    )
    assert (
        format_stats_line(stats, 4, 6, True)
        == " can0@100000   805   74491  36656      0  74% |XXXXXXXXXXXXXX......|"
    )


def test_format_stats_line_pads_names():
    stats = BusStats("can0", 500000, 500000)
    line = format_stats_line(stats, 6, 8, False)
    assert line.startswith("   can0@500000   ")
    assert "|" not in line


def test_main_without_interfaces(capsys):
    assert main([]) == 0
    assert "monitor CAN bus load" in capsys.readouterr().err


def test_main_unknown_option():
    assert main(["-x", "can0@500000"]) == 1


def test_main_too_many_interfaces(capsys):
    assert main([f"can{i}@500000" for i in range(17)]) == 1
    assert "More than 16 CAN devices" in capsys.readouterr().out


def test_main_invalid_bitrate(capsys):
    assert main(["can0@0"]) == 1
    assert "invalid bitrate for CAN device 'can0@0'!" in capsys.readouterr().out