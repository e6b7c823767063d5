import pytest

from cankit.bcm import (
    BcmCommand,
    BcmFlags,
    BcmOpcode,
    MessageAssembler,
    format_rx_message,
    parse_command,
)


def test_parse_add_cyclic():
    cmd = parse_command("< vcan1 A 1 0 123 8 11 22 33 44 55 66 77 88 >")
    assert cmd == BcmCommand(
        ifname="vcan1",
        command="A",
        opcode=BcmOpcode.TX_SETUP,
        flags=BcmFlags.SETTIMER | BcmFlags.STARTTIMER,
        ival2_sec=1,
        ival2_usec=0,
        can_id=0x123,
        data=bytes([0x11, 0x22, 0x33, 0x44, 0x55, 0x66, 0x77, 0x88]),
    )


def test_parse_update_has_no_flags():
    cmd = parse_command("< vcan1 U 0 0 123 3 11 22 33 >")
    assert cmd.opcode is BcmOpcode.TX_SETUP
    assert cmd.flags == BcmFlags(0)
    assert cmd.data == bytes([0x11, 0x22, 0x33])


def test_parse_delete_and_send():
    assert parse_command("< vcan1 D 0 0 123 0 >").opcode is BcmOpcode.TX_DELETE
    send = parse_command("< can0 S 0 0 123 0 >")
    assert send.opcode is BcmOpcode.TX_SEND
    assert send.ifname == "can0"
    assert send.data == b""


def test_parse_receive_setup_with_throttle():
    cmd = parse_command("< vcan1 R 1 500000 123 8 FF 00 F8 00 00 00 00 00 >")
    assert cmd.opcode is BcmOpcode.RX_SETUP
    assert cmd.flags == BcmFlags.SETTIMER
    assert (cmd.ival2_sec, cmd.ival2_usec) == (1, 500000)
    assert cmd.data == bytes([0xFF, 0x00, 0xF8, 0, 0, 0, 0, 0])


def test_parse_filter_and_delete_receive():
    cmd = parse_command("< vcan1 F 0 0 123 0 >")
    assert cmd.flags == BcmFlags.RX_FILTER_ID | BcmFlags.SETTIMER
    assert parse_command("< vcan1 X 0 0 123 0 >").opcode is BcmOpcode.RX_DELETE


def test_parse_without_spaces_before_close():
    cmd = parse_command("< vcan1 D 0 0 7ff 0>")
    assert cmd.can_id == 0x7FF
    assert cmd.nframes == 1


@pytest.mark.parametrize(
    "text",
    [
        "< vcan1 A 1 0 123 4 11 22 >",
        "< vcan1 A 1 0 123 9 1 2 3 4 5 6 7 8 9 >",
        "< vcan1 A >",
        "vcan1 A 1 0 123 0 >",
    ],
)
def test_parse_malformed(text):
    with pytest.raises(ValueError):
        parse_command(text)


def test_parse_unknown_command():
    with pytest.raises(ValueError, match="unknown command 'Z'"):
        parse_command("< vcan1 Z 0 0 123 0 >")


def test_assembler_skips_leading_garbage():
    assembler = MessageAssembler()
    results = [m for m in map(assembler.feed, "xx< can0 S 0 0 123 0 >yy") if m]
    assert results == ["< can0 S 0 0 123 0 >"]
    assert parse_command(results[0]).opcode is BcmOpcode.TX_SEND


def test_assembler_yields_consecutive_messages():
    assembler = MessageAssembler()
    stream = "< a D 0 0 1 0 >< b D 0 0 2 0 >"
    results = [m for m in map(assembler.feed, stream) if m]
    assert [parse_command(m).ifname for m in results] == ["a", "b"]


def test_assembler_discards_overlong_message():
    assembler = MessageAssembler()
    overlong = "<" + "a" * 200 + ">"
    assert [m for m in map(assembler.feed, overlong) if m] == []
    valid = "< can0 D 0 0 123 0 >"
    assert [m for m in map(assembler.feed, valid) if m] == [valid]


def test_assembler_rejects_multiple_characters():
    with pytest.raises(ValueError):
        MessageAssembler().feed("ab")


def test_format_rx_message_example():
    assert (
        format_rx_message("vcan1", 0x123, bytes([0x11, 0x22, 0x33, 0x44]))
        == "< vcan1 123 4 11 22 33 44 >"
    )


def test_format_rx_message_without_data():
    assert format_rx_message("can0", 0x5, b"") == "< can0 005 0 >"


def test_format_rx_message_length_matches_data():
    text = format_rx_message("can0", 0x12345678, bytes(range(8)))
    fields = text.strip("<> ").split()
    assert fields[1] == "12345678"
    assert int(fields[2]) == len(fields) - 3 == 8