"""A small C library subset: character classes, byte-string routines,
number parsing and the pseudorandom generator.

Strings are byte strings (``str`` is accepted and read as Latin-1); a
string ends at its first NUL byte or at the end of the data.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import takewhile
from typing import Optional, Union

from .arith import E_INVAL, E_RANGE
from .x86 import MASK64, ULONG_MAX

RAND_MAX = 0x7FFFFFFF
_DEFAULT_SEED = 819234718
_LCG_MULTIPLIER = 6364136223846793005
_SPACES = b"\t\n\v\f\r "

Char = Union[int, str, bytes]
Text = Union[bytes, bytearray, memoryview, str]


def _code(c: Char) -> int:
    return c if isinstance(c, int) else ord(c)


def _as_bytes(s: Text) -> bytes:
    return s.encode("latin-1") if isinstance(s, str) else bytes(s)


def _cstr(s: Text) -> bytes:
    data = _as_bytes(s)
    nul = data.find(0)
    return data if nul < 0 else data[:nul]


def _sign(a: bytes, b: bytes) -> int:
    return (a > b) - (a < b)


# Character traits

def isspace(c: Char) -> bool:
    c = _code(c)
    return 0x09 <= c <= 0x0D or c == 0x20


def isdigit(c: Char) -> bool:
    return 0x30 <= _code(c) <= 0x39


def islower(c: Char) -> bool:
    return 0x61 <= _code(c) <= 0x7A


def isupper(c: Char) -> bool:
    return 0x41 <= _code(c) <= 0x5A


def isalpha(c: Char) -> bool:
    return 0x61 <= (_code(c) | 0x20) <= 0x7A


def isalnum(c: Char) -> bool:
    return isalpha(c) or isdigit(c)


def tolower(c: Char) -> int:
    c = _code(c)
    return c + 0x20 if isupper(c) else c


def toupper(c: Char) -> int:
    c = _code(c)
    return c - 0x20 if islower(c) else c


# Memory and string routines

def memcmp(a: Text, b: Text, n: int) -> int:
    """Compare the first `n` bytes of `a` and `b` as unsigned; return -1, 0 or 1."""
    x, y = _as_bytes(a), _as_bytes(b)
    if n > len(x) or n > len(y):
        raise ValueError(f"memcmp length {n} exceeds the data")
    return _sign(x[:n], y[:n])


def memchr(s: Text, c: int, n: int) -> Optional[int]:
    """Return the index of byte `c` within the first `n` bytes of `s`, or None."""
    data = _as_bytes(s)
    if n > len(data):
        raise ValueError(f"memchr length {n} exceeds the data")
    index = data.find(c & 0xFF, 0, n)
    return None if index < 0 else index


def strlen(s: Text) -> int:
    return len(_cstr(s))


def strnlen(s: Text, maxlen: int) -> int:
    return min(len(_cstr(s)), maxlen)


def strncpy(src: Text, maxlen: int) -> bytes:
    """Return exactly `maxlen` bytes: `src` truncated, then NUL-padded."""
    body = _cstr(src)[:maxlen]
    return body + bytes(maxlen - len(body))


def strlcpy(src: Text, maxlen: int) -> tuple[bytes, int]:
    """Return the NUL-terminated copy fitting in `maxlen` bytes and `strlen(src)`."""
    s = _cstr(src)
    if maxlen == 0:
        return b"", len(s)
    return s[: maxlen - 1] + b"\0", len(s)


def strcmp(a: Text, b: Text) -> int:
    return _sign(_cstr(a), _cstr(b))


def strncmp(a: Text, b: Text, n: int) -> int:
    return _sign(_cstr(a)[:n], _cstr(b)[:n])


def strcasecmp(a: Text, b: Text) -> int:
    return _sign(_cstr(a).lower(), _cstr(b).lower())


def strncasecmp(a: Text, b: Text, n: int) -> int:
    return _sign(_cstr(a)[:n].lower(), _cstr(b)[:n].lower())


def strchr(s: Text, c: int) -> Optional[int]:
    """Return the index of byte `c` in `s`; searching for NUL finds the terminator."""
    data = _cstr(s)
    c &= 0xFF
    if c == 0:
        return len(data)
    index = data.find(c)
    return None if index < 0 else index


def strstr(haystack: Text, needle: Text) -> Optional[int]:
    """Return the index of the first occurrence of `needle`, or None."""
    index = _cstr(haystack).find(_cstr(needle))
    return None if index < 0 else index


# Number parsing

@dataclass(frozen=True)
class FromCharsResult:
    """Outcome of a parse: the value (None on error), the index just past
    the consumed digits, and an error code (0, E_INVAL or E_RANGE)."""

    value: Optional[int]
    end: int
    ec: int = 0

    @property
    def ok(self) -> bool:
        return self.ec == 0


def _digit(ch: int, base: int) -> Optional[int]:
    if 0x30 <= ch < 0x30 + base:
        return ch - 0x30
    if 0x61 <= ch < 0x61 + base - 10:
        return ch - 0x61 + 10
    if 0x41 <= ch < 0x41 + base - 10:
        return ch - 0x41 + 10
    return None


def from_chars(text: Text, base: int = 10) -> FromCharsResult:
    """Parse an unsigned 64-bit number in `base` from the start of `text`."""
    data = _as_bytes(text)
    digits = list(
        takewhile(lambda d: d is not None, (_digit(ch, base) for ch in data))
    )
    if not digits:
        return FromCharsResult(None, 0, E_INVAL)
    value = 0
    overflow = False
    for digit in digits:
        if value > (ULONG_MAX - digit) // base:
            overflow = True
        else:
            value = value * base + digit
    if overflow:
        return FromCharsResult(None, len(digits), E_RANGE)
    return FromCharsResult(value, len(digits))


def from_chars_signed(text: Text, base: int = 10) -> FromCharsResult:
    """Parse a signed 64-bit number, with an optional leading '-'."""
    data = _as_bytes(text)
    negative = data[:1] == b"-"
    skip = 1 if negative else 0
    result = from_chars(data[skip:], base)
    if result.ec == E_INVAL:
        return FromCharsResult(None, 0, E_INVAL)
    end = result.end + skip
    bound = (1 << 63) - (0 if negative else 1)
    if result.ec == E_RANGE or result.value > bound:
        return FromCharsResult(None, end, E_RANGE)
    return FromCharsResult(-result.value if negative else result.value, end)


def _fix_base(data: bytes, pos: int, base: int) -> tuple[int, int]:
    head = data[pos:pos + 2]
    if base == 0:
        if head[:1] != b"0":
            return pos, 10
        marker = head[1:2].lower()
        if marker == b"x":
            return pos + 2, 16
        if marker == b"o":
            return pos + 2, 8
        if marker == b"b":
            return pos + 2, 2
        return pos, 8
    if base == 16 and head.lower() == b"0x":
        return pos + 2, 16
    return pos, base


def _scan(s: Text, base: int) -> tuple[bool, FromCharsResult, int]:
    data = _as_bytes(s)
    pos = len(data) - len(data.lstrip(_SPACES))
    sign = data[pos:pos + 1]
    negative = sign == b"-"
    if sign in (b"-", b"+"):
        pos += 1
    pos, base = _fix_base(data, pos, base)
    result = from_chars(data[pos:], base)
    end = 0 if result.ec == E_INVAL else pos + result.end
    return negative, result, end


def strtoul(s: Text, base: int = 0) -> tuple[int, int]:
    """Parse an unsigned long; return the value and the index where parsing stopped.

    Base 0 detects 0x, 0o, 0b and leading-0 octal prefixes. Overflow gives
    ULONG_MAX; a leading '-' negates modulo 2**64.
    """
    negative, result, end = _scan(s, base)
    if result.ec == E_RANGE:
        x = ULONG_MAX
    else:
        x = result.value if result.ok else 0
    return ((-x) & MASK64 if negative else x), end


def strtol(s: Text, base: int = 0) -> tuple[int, int]:
    """Parse a signed long, saturating at LONG_MIN/LONG_MAX; return value and end index."""
    negative, result, end = _scan(s, base)
    bound = (1 << 63) - (0 if negative else 1)
    x = result.value if result.ok else 0
    if result.ec == E_RANGE or x > bound:
        x = bound
    return (-x if negative else x), end


# Pseudorandom numbers

class Rng:
    """Linear congruential generator producing values in [0, RAND_MAX]."""

    def __init__(self, seed: Optional[int] = None) -> None:
        self._state = 0
        self._seeded = False
        if seed is not None:
            self.seed(seed)

    def seed(self, seed: int) -> None:
        seed &= 0xFFFFFFFF
        self._state = (seed << 32) | seed
        self._seeded = True

    def rand(self) -> int:
        if not self._seeded:
            self.seed(_DEFAULT_SEED)
        self._state = (self._state * _LCG_MULTIPLIER + 1) & MASK64
        return (self._state >> 33) & RAND_MAX

    def randrange(self, low: int, high: int) -> int:
        """Return a value evenly distributed in [low, high], inclusive."""
        if low > high:
            raise ValueError(f"empty range [{low}, {high}]")
        if high - low > RAND_MAX:
            raise ValueError(f"range [{low}, {high}] is wider than RAND_MAX")
        span = high - low + 1
        div = (RAND_MAX + 1) // span
        top = div * span
        while True:
            r = self.rand()
            if r < top:
                return low + r // div