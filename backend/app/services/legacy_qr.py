"""Legacy QR code state.

WHAT: Detects, decodes and re-encodes the compressed chart state that the
      retired site embedded in QR code links (`/?qr=<blob>`)
WHY: Printed and shared QR codes still point at the old URL shape. They are
     rewritten into the current /explorer query string instead of 404ing.

FORMAT:
    blob = base64( zlib.compress( utf8( json_object ) ) )

    {"c": ["FRA", "BEL"], "e": 1, "df": "2020"}
        -> c=FRA&c=BEL&e=1&df=2020

    List values expand to one pair per item, in order, with `null` items
    rendered as the string `null`. Top-level `null` values are dropped.
    Numbers render as JavaScript would print them (`1e+21`, `0.00001`).
    Nested objects have no query-string form and make the blob malformed.

    The current site uses `qr=0` / `qr=1` as a plain toggle; those never
    count as legacy state.

REFERENCES:
    - app/middleware/legacy_qr.py (redirect middleware)
    - scripts/legacy_qr.py (encode/decode CLI)
"""

import base64
import binascii
import json
import math
import re
import zlib
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
from urllib.parse import urlencode

from starlette.responses import RedirectResponse

MIN_LEGACY_LENGTH = 10
MODERN_TOGGLE_VALUES = frozenset({"0", "1"})

# Inflated state is a few hundred bytes; anything near this is hostile
MAX_DECOMPRESSED_BYTES = 64 * 1024

EXPLORER_PATH = "/explorer"

# Standard and URL-safe alphabets, optional padding. A space is a `+` that
# went through form decoding.
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/\-_ ]+={0,2}$")


@dataclass(frozen=True)
class LegacyDecodeFailure:
    """Why a blob could not be decoded. Returned, never raised."""

    reason: str

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class DecodedLegacyParams:
    """Ordered (key, value) pairs recovered from a legacy blob."""

    pairs: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self.pairs)

    def __len__(self) -> int:
        return len(self.pairs)

    def items(self) -> List[Tuple[str, str]]:
        return list(self.pairs)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for k, v in self.pairs:
            if k == key:
                return v
        return default

    def get_all(self, key: str) -> List[str]:
        return [v for k, v in self.pairs if k == key]

    def to_query_string(self) -> str:
        return urlencode(self.pairs)


DecodeResult = Union[DecodedLegacyParams, LegacyDecodeFailure]


def is_legacy_qr(value: Any) -> bool:
    """Cheap shape check for a legacy `qr` value. Never raises."""
    if not isinstance(value, str):
        return False
    if value in MODERN_TOGGLE_VALUES or len(value) < MIN_LEGACY_LENGTH:
        return False
    return _BASE64_RE.match(value) is not None


def _normalize_base64(value: str) -> str:
    normalized = value.replace(" ", "+").replace("-", "+").replace("_", "/")
    normalized = normalized.rstrip("=")
    return normalized + "=" * (-len(normalized) % 4)


def _inflate(data: bytes) -> bytes:
    decompressor = zlib.decompressobj()
    inflated = decompressor.decompress(data, MAX_DECOMPRESSED_BYTES)
    if decompressor.unconsumed_tail:
        raise ValueError(f"decompressed state exceeds {MAX_DECOMPRESSED_BYTES} bytes")
    if not decompressor.eof:
        raise ValueError("truncated compressed stream")
    return inflated


def _render_number(value: float) -> str:
    """Format a number the way JavaScript's String() does.

    Plain digits for decimal exponents in [-6, 21), exponent notation
    (`1e+21`, `1.5e-7`) outside that range.
    """
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    digits = "".join(str(d) for d in digit_tuple).rstrip("0")
    point = exponent + len(digit_tuple)
    count = len(digits)

    if count <= point <= 21:
        return sign + digits + "0" * (point - count)
    if 0 < point <= 21:
        return sign + digits[:point] + "." + digits[point:]
    if -6 < point <= 0:
        return sign + "0." + "0" * -point + digits

    power = point - 1
    mantissa = digits if count == 1 else f"{digits[0]}.{digits[1:]}"
    return f"{sign}{mantissa}e{'+' if power >= 0 else '-'}{abs(power)}"


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        # JSON numbers are doubles in the browser that wrote the state
        if abs(value) <= 2 ** 53:
            return str(value)
        try:
            value = float(value)
        except OverflowError:
            return "Infinity" if value > 0 else "-Infinity"
    if isinstance(value, float):
        return _render_number(value)
    if isinstance(value, str):
        return value
    raise ValueError(f"unsupported value type {type(value).__name__}")


def _render_item(item: Any) -> str:
    return "null" if item is None else _render(item)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def _flatten(state: Dict[str, Any]) -> Tuple[Tuple[str, str], ...]:
    pairs: List[Tuple[str, str]] = []
    for key, value in state.items():
        if value is None:
            continue
        if isinstance(value, list):
            pairs.extend((key, _render_item(item)) for item in value)
        else:
            pairs.append((key, _render(value)))
    return tuple(pairs)


def decode_legacy_qr(value: str) -> DecodeResult:
    """Decode a legacy blob into ordered query parameters.

    Returns:
        DecodedLegacyParams, or LegacyDecodeFailure describing the first
        step that failed (base64, inflate, utf-8, json, shape)
    """
    if not is_legacy_qr(value):
        return LegacyDecodeFailure("not a legacy qr value")

    try:
        compressed = base64.b64decode(_normalize_base64(value), validate=True)
    except (binascii.Error, ValueError) as e:
        return LegacyDecodeFailure(f"invalid base64: {e}")

    try:
        inflated = _inflate(compressed)
    except zlib.error as e:
        return LegacyDecodeFailure(f"invalid compressed data: {e}")
    except ValueError as e:
        return LegacyDecodeFailure(str(e))

    try:
        state = json.loads(inflated.decode("utf-8"), parse_constant=_reject_constant)
    except UnicodeDecodeError as e:
        return LegacyDecodeFailure(f"invalid utf-8: {e}")
    except ValueError as e:
        return LegacyDecodeFailure(f"invalid json: {e}")

    if not isinstance(state, dict):
        return LegacyDecodeFailure(f"state must be a JSON object, got {type(state).__name__}")

    try:
        return DecodedLegacyParams(_flatten(state))
    except ValueError as e:
        return LegacyDecodeFailure(f"malformed state: {e}")


def encode_legacy_state(state: Dict[str, Any]) -> str:
    """Produce a blob in the legacy format (used by tooling and tests)."""
    raw = json.dumps(state, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(zlib.compress(raw)).decode("ascii")


def build_legacy_redirect(params: DecodedLegacyParams, path: str = EXPLORER_PATH) -> RedirectResponse:
    """Permanent redirect to the current explorer URL for decoded params."""
    query = params.to_query_string()
    url = f"{path}?{query}" if query else path
    return RedirectResponse(url=url, status_code=301)
