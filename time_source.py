#!/usr/bin/env python3
"""
Time source for TOTP generation: the device clock, or the device clock
corrected by a one-shot offset fetched from an online time authority.
"""

import asyncio
import math
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import requests

DEFAULT_TIME_API_URL = "https://www.timeapi.io/api/Time/current/zone?timeZone=UTC"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

DEVICE = "device"
ONLINE = "online"

STATUS_DEVICE = "Using device time"
STATUS_ONLINE = "Using online time (TimeAPI.io)"
STATUS_FETCHING = "Fetching online time..."
STATUS_FAILED = "Failed to fetch online time. Using device time."

# JSON field -> datetime argument
_CALENDAR_FIELDS = (
    ('year', 'year'),
    ('month', 'month'),
    ('day', 'day'),
    ('hour', 'hour'),
    ('minute', 'minute'),
    ('seconds', 'second'),
    ('milliSeconds', 'microsecond'),
)


class SyncError(Exception):
    """Fetching or parsing the online time failed."""


def device_clock() -> int:
    """Milliseconds since the Unix epoch according to this machine."""
    return int(time.time() * 1000)


def parse_time_response(data) -> int:
    """
    Convert a time API payload with UTC calendar fields to epoch milliseconds.

    Raises:
        SyncError: If a field is missing, not a number or out of range
    """
    if not isinstance(data, dict):
        raise SyncError(f"Unexpected response payload: {data!r}")

    fields = {}
    for key, argument in _CALENDAR_FIELDS:
        value = data.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise SyncError(f"Missing or non-numeric field '{key}' in time response")
        if isinstance(value, float) and not math.isfinite(value):
            raise SyncError(f"Non-finite field '{key}' in time response")
        fields[argument] = int(value)

    fields['microsecond'] *= 1000
    try:
        moment = datetime(tzinfo=timezone.utc, **fields)
    except (ValueError, OverflowError) as e:
        raise SyncError(f"Invalid timestamp in time response: {e}")

    return (moment - _EPOCH) // timedelta(milliseconds=1)


def fetch_online_time(session: requests.Session, url: str, timeout: float = 10) -> int:
    """
    GET the remote clock and return it as epoch milliseconds.

    Raises:
        SyncError: On network errors, non-2xx status or malformed JSON
    """
    try:
        response = session.get(url, headers={"Accept": "application/json"}, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise SyncError(f"Network error: {e}")

    if not 200 <= response.status_code < 300:
        raise SyncError(f"Network error: {response.status_code}")

    try:
        data = response.json()
    except ValueError as e:
        raise SyncError(f"Invalid JSON in time response: {e}")

    return parse_time_response(data)


class TimeSource:
    """
    Supplies the current instant in epoch milliseconds.

    Mode and offset are always published together as one tuple, so `now()`
    never sees a half-applied sync.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], int] = device_clock,
        timeout: float = 10,
    ):
        self.url = url or os.getenv('TIME_API_URL', DEFAULT_TIME_API_URL)
        self.session = session or requests.Session()
        self.clock = clock
        self.timeout = timeout
        self.status = STATUS_DEVICE
        self.last_error: Optional[SyncError] = None
        self._state: Tuple[str, int] = (DEVICE, 0)
        self._generation = 0

    @property
    def mode(self) -> str:
        return self._state[0]

    @property
    def offset(self) -> int:
        return self._state[1]

    def now(self) -> int:
        _, offset = self._state
        return self.clock() + offset

    def use_device(self) -> None:
        """Drop back to device time immediately; any in-flight sync is ignored."""
        self._generation += 1
        self._state = (DEVICE, 0)
        self.status = STATUS_DEVICE

    async def sync(self) -> bool:
        """
        Fetch the online time once and cache the offset to the device clock.

        Returns:
            True if the source is now synced, False if it fell back to device time
        """
        self._generation += 1
        generation = self._generation
        self._state = (DEVICE, 0)
        self.status = STATUS_FETCHING
        print(f"🌐 {STATUS_FETCHING}")

        try:
            remote_ms = await asyncio.to_thread(fetch_online_time, self.session, self.url, self.timeout)
        except SyncError as e:
            if generation != self._generation:
                return False
            print(f"❌ Failed to fetch online time: {e}")
            self.last_error = e
            self._state = (DEVICE, 0)
            self.status = STATUS_FAILED
            return False

        if generation != self._generation:
            # A newer sync or an explicit switch already settled the state
            return False

        offset = remote_ms - self.clock()
        self.last_error = None
        self._state = (ONLINE, offset)
        self.status = STATUS_ONLINE
        print(f"✅ {STATUS_ONLINE}, offset {offset:+d} ms")
        return True
