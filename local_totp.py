#!/usr/bin/env python3
"""
Local TOTP Generator
====================

Generates TOTP codes entirely on this machine:
- Current and next code with a live countdown
- Device time or device time corrected by a one-shot online time sync
- Settings from config.json / environment, shareable as a query string
"""

import asyncio
import json
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse

from dotenv import load_dotenv

from time_source import DEVICE, ONLINE, TimeSource
from totp import Algorithm, CodePair, OTPConfig, TOTPEngine, TOTPError

# Load environment variables
load_dotenv()

DEFAULTS = {
    'secret': '',
    'digits': 6,
    'period': 30,
    'algorithm': Algorithm.SHA1.value,
    'time_source': DEVICE,
}

# config key -> query parameter, in share link order
_SHARE_PARAMS = (
    ('secret', 'secret'),
    ('digits', 'digits'),
    ('period', 'period'),
    ('algorithm', 'algorithm'),
    ('time_source', 'timeSource'),
)

_ENV_OVERRIDES = {
    'secret': 'TOTP_SECRET',
    'digits': 'TOTP_DIGITS',
    'period': 'TOTP_PERIOD',
    'algorithm': 'TOTP_ALGORITHM',
    'time_source': 'TOTP_TIME_SOURCE',
}


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Load settings from a JSON file, then override with environment variables."""
    config = dict(DEFAULTS)
    config_file = config_file or os.getenv('CONFIG_FILE', 'config.json')

    try:
        with open(config_file, 'r') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        config.update(data)
    except FileNotFoundError:
        print(f"⚠️  Config file {config_file} not found, using environment variables")
    except ValueError as e:
        # JSONDecodeError is a ValueError too
        print(f"❌ Error reading config file: {e}")

    for key, env_name in _ENV_OVERRIDES.items():
        if os.getenv(env_name):
            config[key] = os.getenv(env_name)

    return config


def build_share_query(values: Dict[str, Any]) -> str:
    """Encode settings as the query string of a shareable link."""
    params = [(param, str(values.get(key, DEFAULTS[key])).strip()) for key, param in _SHARE_PARAMS]
    return urlencode(params)


def parse_share_query(query: str) -> Dict[str, str]:
    """Read settings back from a share link, a bare query string or '?...'."""
    if '://' in query:
        query = urlparse(query).query
    query = query.lstrip('?')

    params = dict(parse_qsl(query, keep_blank_values=True))
    return {key: params[param] for key, param in _SHARE_PARAMS if param in params}


def is_non_default(values: Dict[str, Any]) -> bool:
    """True when digits, period or algorithm differ from 6 / 30 / SHA-1."""
    try:
        return (
            int(values.get('digits', 6)) != 6
            or int(values.get('period', 30)) != 30
            or Algorithm.parse(values.get('algorithm', 'SHA-1')) is not Algorithm.SHA1
        )
    except (TypeError, ValueError, OverflowError):
        return True


OK = "ok"
NO_SECRET = "no_secret"
ERROR = "error"


@dataclass(frozen=True)
class DisplayResult:
    status: str
    codes: Optional[CodePair] = None
    error: Optional[TOTPError] = None


class DisplayScheduler:
    """
    Recomputes the code pair once per tick and whenever the settings or the
    time source change. Results are handed to `on_update`.
    """

    def __init__(
        self,
        engine: TOTPEngine,
        time_source: TimeSource,
        get_config: Callable[[], Dict[str, Any]],
        on_update: Callable[[DisplayResult], None],
        interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.time_source = time_source
        self.get_config = get_config
        self.on_update = on_update
        self.interval = interval
        self.sleep = sleep
        self._running = False

    def recompute(self) -> DisplayResult:
        try:
            # Settings are re-read on every recomputation to pick up edits
            config = OTPConfig.from_values(self.get_config())
            codes = self.engine.code_pair(config, self.time_source.now())
        except TOTPError as e:
            result = DisplayResult(status=ERROR, error=e)
        else:
            if codes is None:
                result = DisplayResult(status=NO_SECRET)
            else:
                result = DisplayResult(status=OK, codes=codes)

        self.on_update(result)
        return result

    async def run(self) -> None:
        """Tick until `stop()` is called, starting with an immediate recompute."""
        self._running = True
        self.recompute()
        while self._running:
            await self.sleep(self.interval)
            if not self._running:
                break
            self.recompute()

    def stop(self) -> None:
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def config_changed(self) -> DisplayResult:
        return self.recompute()

    async def switch_time_source(self, mode: str) -> DisplayResult:
        """Switch to device or online time, then recompute straight away."""
        if mode == ONLINE:
            await self.time_source.sync()
        elif mode == DEVICE:
            self.time_source.use_device()
        else:
            raise ValueError(f"Unknown time source: {mode}")
        return self.recompute()


def render(result: DisplayResult) -> Dict[str, str]:
    """Text for the current code, next code and countdown lines."""
    if result.status == OK:
        return {
            'current': result.codes.current,
            'next': f"Next: {result.codes.next}",
            'countdown': f"Valid for {result.codes.seconds_remaining}s",
        }
    if result.status == NO_SECRET:
        return {'current': "------", 'next': "Next: ------", 'countdown': "Valid for --s"}
    return {'current': "Error", 'next': "Next: Error", 'countdown': "Valid for --s"}


class LocalTOTP:
    """Main application object wiring settings, time source and scheduler."""

    def __init__(self, config_file: Optional[str] = None, time_source: Optional[TimeSource] = None):
        self.config_file = config_file
        self.config = load_config(config_file)
        self.time_source = time_source or TimeSource()
        self.engine = TOTPEngine()
        self.last_result: Optional[DisplayResult] = None
        self.scheduler = DisplayScheduler(
            self.engine,
            self.time_source,
            get_config=lambda: self.config,
            on_update=self._remember,
        )

    def _remember(self, result: DisplayResult) -> None:
        self.last_result = result
        if result.status == ERROR:
            print(f"❌ Error generating TOTP: {result.error}")

    async def start(self) -> None:
        """Apply the configured time source once at startup."""
        if self.config.get('time_source') == ONLINE:
            ok = await self.time_source.sync()
            if not ok:
                self.config['time_source'] = DEVICE
        else:
            print(f"🕐 {self.time_source.status}")

    def update_setting(self, key: str, value: Any) -> DisplayResult:
        if key not in DEFAULTS:
            raise KeyError(key)
        self.config[key] = value
        return self.scheduler.config_changed()

    async def set_time_source(self, mode: str) -> DisplayResult:
        result = await self.scheduler.switch_time_source(mode)
        self.config['time_source'] = self.time_source.mode
        return result

    def share_query(self) -> str:
        return build_share_query(self.config)

    async def load_share_link(self, link: str) -> Optional[DisplayResult]:
        """Apply the settings carried by a share link."""
        values = parse_share_query(link)
        if not values:
            print("⚠️  No settings found in share link")
            return None

        result = None
        mode = values.pop('time_source', None)
        for key, value in values.items():
            result = self.update_setting(key, value)

        if mode in (DEVICE, ONLINE) and mode != self.time_source.mode:
            result = await self.set_time_source(mode)
        elif mode is not None and mode not in (DEVICE, ONLINE):
            print(f"⚠️  Unknown time source in share link: {mode}")
        return result

    def show_codes(self) -> None:
        lines = render(self.scheduler.recompute())
        print(f"🔑 Current TOTP Code: {lines['current']}")
        print(f"🔮 {lines['next']}")
        print(f"⏱️  {lines['countdown']}")
        print(f"🕐 {self.time_source.status}")

    async def watch(self) -> None:
        """Print codes every second until interrupted."""
        def show(result: DisplayResult) -> None:
            self.last_result = result
            lines = render(result)
            print(f"\r🔑 {lines['current']}   {lines['next']}   {lines['countdown']}   ", end="", flush=True)

        scheduler = DisplayScheduler(self.engine, self.time_source, lambda: self.config, show)
        try:
            await scheduler.run()
        finally:
            scheduler.stop()
            print()

    def show_settings(self) -> None:
        print(f"   Secret: {'(set)' if self.config.get('secret') else '(none)'}")
        if is_non_default(self.config):
            print("   Advanced settings:")
            print(f"     Digits: {self.config.get('digits')}")
            print(f"     Period: {self.config.get('period')}s")
            print(f"     Algorithm: {self.config.get('algorithm')}")


def main():
    """Interactive CLI for the local TOTP generator."""
    print("🔐 Local TOTP Generator")
    print("=" * 40)

    app = LocalTOTP()
    asyncio.run(app.start())
    app.show_settings()

    while True:
        print("\n📋 Available operations:")
        print("1. 🔑 Show current and next code")
        print("2. ⏱️  Watch codes live (Ctrl+C to stop)")
        print("3. 🌐 Switch time source")
        print("4. ✏️  Edit settings")
        print("5. 🔗 Show share link")
        print("6. 📥 Load share link")
        print("7. ❌ Exit")

        choice = input("\nSelect operation (1-7): ").strip()

        if choice == '1':
            print()
            app.show_codes()

        elif choice == '2':
            print("\n⏱️  Watching codes...")
            try:
                asyncio.run(app.watch())
            except KeyboardInterrupt:
                print("⏹️  Stopped")

        elif choice == '3':
            current = app.time_source.mode
            mode = DEVICE if current == ONLINE else ONLINE
            print(f"\n🔄 Switching to {mode} time...")
            asyncio.run(app.set_time_source(mode))
            print(f"🕐 {app.time_source.status}")

        elif choice == '4':
            for key in ('secret', 'digits', 'period', 'algorithm'):
                value = input(f"   {key.capitalize()} [{app.config.get(key)}]: ").strip()
                if value:
                    app.update_setting(key, value)
            app.show_settings()

        elif choice == '5':
            print(f"\n🔗 ?{app.share_query()}")

        elif choice == '6':
            link = input("\n🔗 Paste share link: ").strip()
            if link:
                asyncio.run(app.load_share_link(link))
                app.show_settings()
                print(f"🕐 {app.time_source.status}")

        elif choice == '7':
            print("\n👋 Goodbye!")
            break

        else:
            print("❌ Invalid choice. Please select 1-7.")


if __name__ == "__main__":
    main()
