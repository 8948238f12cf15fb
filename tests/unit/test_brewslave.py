"""Unit tests for the Brewslave protocol client.

Tests cover:
- Status byte interpretation (ACK, NACK, anything else)
- Request framing for every opcode
- State decoding including the NaN sentinel and flag bits
- Per-step timeouts and transport failures
- Discarding a late response after a timeout, bounded on a noisy line
"""

from __future__ import annotations

import asyncio
import math
import struct

import pytest

from brewmeister.domain.errors import DeviceIoError, DeviceTimeout, Nack, UnexpectedData
from brewmeister.hardware.brewslave import (
    RESPONSE_ACK,
    RESPONSE_NACK,
    check_status,
    decode_state,
    encode_set_temperature,
)
from tests.conftest import make_client

ACK = bytes([RESPONSE_ACK])
NACK = bytes([RESPONSE_NACK])


def state_frame(current: float, target: float, flags: int) -> bytes:
    return struct.pack("<ffB", current, target, flags)


# ---------------------------------------------------------------------------
# Status byte
# ---------------------------------------------------------------------------


class TestCheckStatus:
    """ACK/NACK detection uses AND against each flag."""

    def test_ack(self) -> None:
        check_status(0x80)

    def test_nack(self) -> None:
        with pytest.raises(Nack):
            check_status(0x40)

    @pytest.mark.parametrize("status", [0x00, 0x01, 0x20, 0x3F])
    def test_other_patterns_are_unexpected(self, status: int) -> None:
        with pytest.raises(UnexpectedData) as info:
            check_status(status)
        assert info.value.status == status

    def test_ack_with_extra_bits_is_ack(self) -> None:
        check_status(0x81)


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


class TestFraming:
    def test_set_temperature_frame(self) -> None:
        frame = encode_set_temperature(65.5)
        assert frame[0] == 0x02
        assert len(frame) == 5
        assert struct.unpack("<f", frame[1:])[0] == 65.5

    def test_set_temperature_out_of_range(self) -> None:
        with pytest.raises(ValueError):
            encode_set_temperature(1e40)

    def test_decode_state(self) -> None:
        state = decode_state(state_frame(64.5, 65.0, 0b11))
        assert state.current_temperature == 64.5
        assert state.target_temperature == 65.0
        assert state.stirrer_on is True
        assert state.heater_on is True
        assert state.serial_problem is False

    def test_decode_flags_independent(self) -> None:
        stirrer_only = decode_state(state_frame(20.0, 20.0, 0b01))
        heater_only = decode_state(state_frame(20.0, 20.0, 0b10))
        assert (stirrer_only.stirrer_on, stirrer_only.heater_on) == (True, False)
        assert (heater_only.stirrer_on, heater_only.heater_on) == (False, True)

    def test_nan_decodes_to_none(self) -> None:
        state = decode_state(state_frame(math.nan, math.nan, 0))
        assert state.current_temperature is None
        assert state.target_temperature is None


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransactions:
    async def test_read_state(self) -> None:
        client, link = make_client([state_frame(42.0, 65.0, 0b10)])
        state = await client.read_state()
        assert link.written == [b"\x01"]
        assert state.current_temperature == 42.0
        assert state.heater_on is True

    async def test_read_state_nan_current(self) -> None:
        client, _ = make_client([state_frame(math.nan, 65.0, 0)])
        state = await client.read_state()
        assert state.current_temperature is None
        assert state.target_temperature == 65.0

    async def test_set_temperature_ack(self) -> None:
        client, link = make_client([ACK])
        await client.set_temperature(30.0)
        assert link.written == [struct.pack("<Bf", 0x02, 30.0)]

    async def test_set_temperature_nack(self) -> None:
        client, _ = make_client([NACK])
        with pytest.raises(Nack):
            await client.set_temperature(30.0)

    async def test_set_temperature_zero_status(self) -> None:
        client, _ = make_client([b"\x00"])
        with pytest.raises(UnexpectedData):
            await client.set_temperature(30.0)

    async def test_stirrer_opcodes(self) -> None:
        client, link = make_client([ACK, ACK])
        await client.turn_stirrer_on()
        await client.turn_stirrer_off()
        assert link.written == [b"\x03", b"\x04"]

    async def test_stirrer_nack(self) -> None:
        client, _ = make_client([NACK])
        with pytest.raises(Nack):
            await client.set_stirrer(True)


class TestFailures:
    async def test_silent_device_times_out(self) -> None:
        client, _ = make_client([None])
        with pytest.raises(DeviceTimeout):
            await client.read_state()

    async def test_short_response_times_out(self) -> None:
        client, _ = make_client([b"\x00\x00"])
        with pytest.raises(DeviceTimeout):
            await client.read_state()

    async def test_eof_is_io_error(self) -> None:
        client, link = make_client([])
        link.reader.feed_data(b"\x00")
        link.reader.feed_eof()
        with pytest.raises(DeviceIoError):
            await client.read_state()

    async def test_write_failure_is_io_error(self) -> None:
        client, link = make_client([])
        link.fail_writes = True
        with pytest.raises(DeviceIoError):
            await client.set_temperature(50.0)

    async def test_timeout_is_not_io_error(self) -> None:
        client, _ = make_client([None])
        with pytest.raises(DeviceTimeout) as info:
            await client.set_temperature(50.0)
        assert not isinstance(info.value, DeviceIoError)

    async def test_late_response_is_discarded(self) -> None:
        client, link = make_client([None, NACK])
        with pytest.raises(DeviceTimeout):
            await client.set_temperature(50.0)

        # The ACK for the first request arrives after its deadline.
        link.reader.feed_data(ACK)

        with pytest.raises(Nack):
            await client.set_temperature(51.0)

    async def test_noisy_line_bounds_the_discard(self) -> None:
        client, link = make_client([None, ACK], timeout=0.05)
        with pytest.raises(DeviceTimeout):
            await client.set_temperature(50.0)

        async def chatter() -> None:
            while True:
                link.reader.feed_data(b"\x00")
                await asyncio.sleep(0.01)

        noise = asyncio.create_task(chatter())
        try:
            with pytest.raises(DeviceTimeout):
                await asyncio.wait_for(client.set_temperature(51.0), 0.5)
        finally:
            noise.cancel()

        # Nothing reached the rig while the line was busy.
        assert len(link.written) == 1

    async def test_close(self) -> None:
        client, link = make_client([])
        await client.close()
        assert link.closed
