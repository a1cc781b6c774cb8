#!/usr/bin/env python3
"""
TOTP code generation (RFC 4226 / RFC 6238).

Base32 secret decoding, HOTP with dynamic truncation and the time-step
engine that turns an instant into the current and next code.
"""

import hashlib
import hmac
import re
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"

# Formatting characters users paste along with their secret
_FORMATTING = re.compile(r"[\s-]+")

MAX_COUNTER = 2 ** 64 - 1


class TOTPError(ValueError):
    """Base class for code generation failures."""


class InvalidBase32Character(TOTPError):
    def __init__(self, character: str, position: int):
        super().__init__(f"Invalid character {character!r} at position {position} in Base32 secret")
        self.character = character
        self.position = position


class UnsupportedAlgorithm(TOTPError):
    def __init__(self, algorithm: Any):
        super().__init__(f"Unsupported algorithm {algorithm!r}, must be SHA-1, SHA-256 or SHA-512")
        self.algorithm = algorithm


class InvalidConfig(TOTPError):
    pass


class Algorithm(Enum):
    SHA1 = "SHA-1"
    SHA256 = "SHA-256"
    SHA512 = "SHA-512"

    @property
    def digest(self):
        return {
            Algorithm.SHA1: hashlib.sha1,
            Algorithm.SHA256: hashlib.sha256,
            Algorithm.SHA512: hashlib.sha512,
        }[self]

    @classmethod
    def parse(cls, value: Any) -> "Algorithm":
        """Accept 'SHA-1', 'SHA1', 'sha1' and friends."""
        if isinstance(value, Algorithm):
            return value
        if isinstance(value, str):
            name = value.strip().upper().replace("-", "")
            for algorithm in cls:
                if algorithm.name == name:
                    return algorithm
        raise UnsupportedAlgorithm(value)


def base32_decode(text: str) -> bytes:
    """
    Decode an RFC 4648 Base32 string into raw secret bytes.

    Trailing padding is stripped, the text is upper-cased and whitespace or
    hyphens are dropped. Trailing bits that do not fill a whole byte are
    discarded.

    Args:
        text: Base32 secret as typed by the user

    Returns:
        Decoded bytes (empty if nothing is left after sanitizing)

    Raises:
        InvalidBase32Character: If a character outside A-Z2-7 remains
    """
    sanitized = _FORMATTING.sub("", text.rstrip("=").upper())
    # rstrip again in case the padding was followed by whitespace
    sanitized = sanitized.rstrip("=")

    buffer = 0
    bits = 0
    output = bytearray()
    for position, char in enumerate(sanitized):
        value = BASE32_ALPHABET.find(char)
        if value == -1:
            raise InvalidBase32Character(char, position)
        buffer = (buffer << 5) | value
        bits += 5
        if bits >= 8:
            bits -= 8
            output.append((buffer >> bits) & 0xFF)
            buffer &= (1 << bits) - 1

    return bytes(output)


def int_to_bytestring(counter: int) -> bytes:
    """Encode the HOTP counter as an 8-byte big-endian message."""
    if counter < 0 or counter > MAX_COUNTER:
        raise InvalidConfig(f"Counter {counter} does not fit in an unsigned 64-bit integer")
    return struct.pack('>Q', counter)


def generate_otp(secret: bytes, counter: int, algorithm: Any = Algorithm.SHA1, digits: int = 6) -> str:
    """
    Compute an HOTP value.

    Args:
        secret: Raw secret bytes (the HMAC key)
        counter: HOTP counter, 0 <= counter < 2**64
        algorithm: Algorithm member or its name
        digits: Length of the returned code

    Returns:
        Decimal code, left-padded with zeros to exactly `digits` characters
    """
    algorithm = Algorithm.parse(algorithm)
    if digits < 1:
        raise InvalidConfig(f"digits must be at least 1, got {digits}")

    hmac_hash = hmac.new(secret, int_to_bytestring(counter), algorithm.digest).digest()

    # Dynamic truncation
    offset = hmac_hash[-1] & 0x0F
    truncated = struct.unpack('>I', hmac_hash[offset:offset + 4])[0]
    truncated &= 0x7FFFFFFF

    return str(truncated % 10 ** digits).zfill(digits)


@dataclass(frozen=True)
class OTPConfig:
    secret: str
    digits: int = 6
    period: int = 30
    algorithm: Algorithm = Algorithm.SHA1

    def __post_init__(self):
        if self.digits < 1:
            raise InvalidConfig(f"digits must be at least 1, got {self.digits}")
        if self.period <= 0:
            raise InvalidConfig(f"period must be a positive number of seconds, got {self.period}")

    @classmethod
    def from_values(cls, values: Dict[str, Any]) -> "OTPConfig":
        """Build a config from raw form/config-file values."""
        try:
            digits = int(values.get('digits', 6))
            period = int(values.get('period', 30))
        except (TypeError, ValueError, OverflowError) as e:
            raise InvalidConfig(f"digits and period must be integers: {e}")

        return cls(
            secret=str(values.get('secret') or '').strip(),
            digits=digits,
            period=period,
            algorithm=Algorithm.parse(values.get('algorithm', Algorithm.SHA1.value)),
        )


@dataclass(frozen=True)
class CodePair:
    current: str
    next: str
    seconds_remaining: int


class TOTPEngine:
    """Turns instants (milliseconds since epoch) into time-step codes."""

    @staticmethod
    def timecode(instant_ms: int, period: int) -> int:
        return (instant_ms // 1000) // period

    @staticmethod
    def next_step_start(instant_ms: int, period: int) -> int:
        """Start of the following time step, in seconds."""
        return (TOTPEngine.timecode(instant_ms, period) + 1) * period

    def code_at(self, config: OTPConfig, instant_ms: int) -> Optional[str]:
        """
        Code valid for the time step containing `instant_ms`.

        Returns None when no secret is configured.
        """
        key = base32_decode(config.secret)
        if not key:
            return None
        return generate_otp(key, self.timecode(instant_ms, config.period), config.algorithm, config.digits)

    def code_pair(self, config: OTPConfig, instant_ms: int) -> Optional[CodePair]:
        """
        Current code, next code and whole seconds left in the current step.

        Returns None when no secret is configured. Decode and generation
        errors propagate unchanged.
        """
        key = base32_decode(config.secret)
        if not key:
            return None

        next_start = self.next_step_start(instant_ms, config.period)
        current = generate_otp(key, self.timecode(instant_ms, config.period), config.algorithm, config.digits)
        upcoming = generate_otp(key, self.timecode(next_start * 1000, config.period), config.algorithm, config.digits)

        return CodePair(
            current=current,
            next=upcoming,
            seconds_remaining=next_start - instant_ms // 1000,
        )
