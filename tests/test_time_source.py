"""Tests for the device/online time source."""

import asyncio
from unittest.mock import MagicMock

import pytest
import requests

from time_source import (
    DEVICE,
    ONLINE,
    STATUS_DEVICE,
    STATUS_FAILED,
    STATUS_ONLINE,
    SyncError,
    TimeSource,
    fetch_online_time,
    parse_time_response,
)

# 2009-02-13T23:31:30.250Z
REMOTE_PAYLOAD = {
    "year": 2009,
    "month": 2,
    "day": 13,
    "hour": 23,
    "minute": 31,
    "seconds": 30,
    "milliSeconds": 250,
    "dateTime": "2009-02-13T23:31:30.25",
    "timeZone": "UTC",
}
REMOTE_MS = 1234567890250


def make_session(payload=None, status_code=200, error=None):
    session = MagicMock(spec=requests.Session)
    if error is not None:
        session.get.side_effect = error
        return session
    response = MagicMock()
    response.status_code = status_code
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    session.get.return_value = response
    return session


def fixed_clock(ms):
    return lambda: ms


class TestParseTimeResponse:
    """Tests for parse_time_response."""

    def test_calendar_fields(self):
        assert parse_time_response(REMOTE_PAYLOAD) == REMOTE_MS

    def test_epoch(self):
        payload = dict(REMOTE_PAYLOAD, year=1970, month=1, day=1, hour=0, minute=0, seconds=0, milliSeconds=0)
        assert parse_time_response(payload) == 0

    @pytest.mark.parametrize("field", ["year", "month", "day", "hour", "minute", "seconds", "milliSeconds"])
    def test_missing_field(self, field):
        payload = dict(REMOTE_PAYLOAD)
        del payload[field]
        with pytest.raises(SyncError):
            parse_time_response(payload)

    @pytest.mark.parametrize("value", ["30", None, True, [30]])
    def test_non_numeric_field(self, value):
        with pytest.raises(SyncError):
            parse_time_response(dict(REMOTE_PAYLOAD, seconds=value))

    @pytest.mark.parametrize("field,value", [
        ("seconds", float("nan")),
        ("minute", float("inf")),
        ("milliSeconds", float("-inf")),
        ("year", 10 ** 20),
        ("milliSeconds", 10 ** 20),
    ])
    def test_unrepresentable_field(self, field, value):
        """Non-finite or enormous values are rejected, not raised raw."""
        with pytest.raises(SyncError):
            parse_time_response(dict(REMOTE_PAYLOAD, **{field: value}))

    def test_impossible_date(self):
        with pytest.raises(SyncError):
            parse_time_response(dict(REMOTE_PAYLOAD, month=13))

    def test_not_an_object(self):
        with pytest.raises(SyncError):
            parse_time_response([2009, 2, 13])


class TestFetchOnlineTime:
    """Tests for fetch_online_time."""

    def test_success(self):
        session = make_session(REMOTE_PAYLOAD)
        assert fetch_online_time(session, "https://time.example/utc") == REMOTE_MS
        session.get.assert_called_once()
        assert session.get.call_args[0][0] == "https://time.example/utc"

    @pytest.mark.parametrize("status_code", [301, 404, 500, 503])
    def test_non_success_status(self, status_code):
        with pytest.raises(SyncError):
            fetch_online_time(make_session(REMOTE_PAYLOAD, status_code=status_code), "https://time.example/utc")

    def test_network_error(self):
        session = make_session(error=requests.exceptions.ConnectionError("unreachable"))
        with pytest.raises(SyncError):
            fetch_online_time(session, "https://time.example/utc")

    def test_timeout(self):
        session = make_session(error=requests.exceptions.Timeout("slow"))
        with pytest.raises(SyncError):
            fetch_online_time(session, "https://time.example/utc")

    def test_invalid_json(self):
        with pytest.raises(SyncError):
            fetch_online_time(make_session(ValueError("not json")), "https://time.example/utc")


class TestTimeSource:
    """Tests for TimeSource state transitions."""

    def test_starts_on_device_time(self):
        source = TimeSource(session=make_session(), clock=fixed_clock(1000))
        assert source.mode == DEVICE
        assert source.offset == 0
        assert source.now() == 1000
        assert source.status == STATUS_DEVICE

    def test_sync_success(self):
        source = TimeSource(url="https://time.example/utc", session=make_session(REMOTE_PAYLOAD),
                            clock=fixed_clock(REMOTE_MS - 5000))
        assert asyncio.run(source.sync()) is True
        assert source.mode == ONLINE
        assert source.offset == 5000
        assert source.now() == REMOTE_MS
        assert source.status == STATUS_ONLINE
        assert source.last_error is None

    def test_sync_failure_leaves_device_time(self):
        """A failed fetch never leaves a nonzero offset behind."""
        source = TimeSource(session=make_session(error=requests.exceptions.ConnectionError("down")),
                            clock=fixed_clock(1000))
        assert asyncio.run(source.sync()) is False
        assert source.mode == DEVICE
        assert source.offset == 0
        assert source.now() == 1000
        assert source.status == STATUS_FAILED
        assert isinstance(source.last_error, SyncError)

    @pytest.mark.parametrize("field,value", [
        ("seconds", float("nan")),
        ("hour", float("inf")),
        ("year", 10 ** 20),
    ])
    def test_sync_with_unrepresentable_payload(self, field, value):
        """A malformed reply settles on device time with the failed status."""
        source = TimeSource(session=make_session(dict(REMOTE_PAYLOAD, **{field: value})),
                            clock=fixed_clock(1000))
        assert asyncio.run(source.sync()) is False
        assert source.mode == DEVICE
        assert source.offset == 0
        assert source.status == STATUS_FAILED
        assert isinstance(source.last_error, SyncError)

    def test_failed_resync_clears_previous_offset(self):
        session = make_session(REMOTE_PAYLOAD)
        source = TimeSource(session=session, clock=fixed_clock(REMOTE_MS - 5000))
        asyncio.run(source.sync())
        assert source.offset == 5000

        session.get.side_effect = requests.exceptions.ConnectionError("down")
        assert asyncio.run(source.sync()) is False
        assert source.mode == DEVICE
        assert source.offset == 0

    def test_resync_recomputes_offset(self):
        """A second sync replaces the offset instead of averaging it."""
        clock_ms = [REMOTE_MS - 5000]
        source = TimeSource(session=make_session(REMOTE_PAYLOAD), clock=lambda: clock_ms[0])
        asyncio.run(source.sync())
        clock_ms[0] = REMOTE_MS - 1000
        asyncio.run(source.sync())
        assert source.mode == ONLINE
        assert source.offset == 1000

    def test_use_device_resets_offset(self):
        source = TimeSource(session=make_session(REMOTE_PAYLOAD), clock=fixed_clock(REMOTE_MS - 5000))
        asyncio.run(source.sync())
        source.use_device()
        assert source.mode == DEVICE
        assert source.offset == 0
        assert source.status == STATUS_DEVICE

    def test_device_time_while_sync_in_flight(self, monkeypatch):
        """now() keeps returning device time until the sync settles."""
        seen = []

        async def scenario():
            source = TimeSource(session=make_session(REMOTE_PAYLOAD), clock=fixed_clock(REMOTE_MS - 5000))
            fetch_started = asyncio.Event()
            release = asyncio.Event()

            async def slow_to_thread(func, *args):
                fetch_started.set()
                await release.wait()
                return func(*args)

            monkeypatch.setattr(asyncio, "to_thread", slow_to_thread)
            task = asyncio.create_task(source.sync())
            await fetch_started.wait()
            seen.append((source.mode, source.now()))
            release.set()
            await task
            seen.append((source.mode, source.now()))

        asyncio.run(scenario())
        assert seen == [(DEVICE, REMOTE_MS - 5000), (ONLINE, REMOTE_MS)]

    def test_switch_to_device_wins_over_in_flight_sync(self, monkeypatch):
        async def scenario():
            source = TimeSource(session=make_session(REMOTE_PAYLOAD), clock=fixed_clock(REMOTE_MS - 5000))
            release = asyncio.Event()

            async def slow_to_thread(func, *args):
                await release.wait()
                return func(*args)

            monkeypatch.setattr(asyncio, "to_thread", slow_to_thread)
            task = asyncio.create_task(source.sync())
            await asyncio.sleep(0)
            source.use_device()
            release.set()
            result = await task
            return source, result

        source, result = asyncio.run(scenario())
        assert result is False
        assert source.mode == DEVICE
        assert source.offset == 0

    def test_later_issued_sync_wins(self, monkeypatch):
        """A superseded sync resolving last does not overwrite the newer result."""
        async def scenario():
            clock_ms = [REMOTE_MS - 5000]
            source = TimeSource(session=make_session(REMOTE_PAYLOAD), clock=lambda: clock_ms[0])
            gates = [asyncio.Event(), asyncio.Event()]
            calls = []

            async def gated_to_thread(func, *args):
                gate = gates[len(calls)]
                calls.append(gate)
                await gate.wait()
                return func(*args)

            monkeypatch.setattr(asyncio, "to_thread", gated_to_thread)
            first = asyncio.create_task(source.sync())
            await asyncio.sleep(0)
            second = asyncio.create_task(source.sync())
            await asyncio.sleep(0)

            # The newer call settles first with a 2s offset
            clock_ms[0] = REMOTE_MS - 2000
            gates[1].set()
            assert await second is True

            # The older call resolves afterwards and must be ignored
            clock_ms[0] = REMOTE_MS - 9000
            gates[0].set()
            assert await first is False
            return source

        source = asyncio.run(scenario())
        assert source.mode == ONLINE
        assert source.offset == 2000
