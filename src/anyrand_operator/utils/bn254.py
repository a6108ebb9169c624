"""
BN254 G1 point codec for drand evmnet signatures.

Supports the 64-byte uncompressed form (big-endian x || y) served by the
beacon and the 32-byte compressed form whose two most significant bits are
flags (0b10 smallest y, 0b11 largest y, 0b01 point at infinity). Field and
curve arithmetic come from py_ecc.
"""

from dataclasses import dataclass

from hexbytes import HexBytes
from py_ecc.bn128 import FQ, b as CURVE_B, field_modulus as FIELD_MODULUS
from py_ecc.bn128 import is_on_curve as _curve_contains

from ..errors import SignatureDecodeError

UNCOMPRESSED_SIZE = 64
COMPRESSED_SIZE = 32

_FLAG_MASK = 0b11 << 6
_FLAG_SMALLEST = 0b10 << 6
_FLAG_LARGEST = 0b11 << 6
_FLAG_INFINITY = 0b01 << 6


@dataclass(frozen=True, slots=True)
class G1Point:
    """Affine point on y^2 = x^3 + 3 over the BN254 base field."""

    x: int
    y: int

    def as_uint256_pair(self) -> list[int]:
        return [self.x, self.y]


def is_on_curve(x: int, y: int) -> bool:
    if not (0 <= x < FIELD_MODULUS and 0 <= y < FIELD_MODULUS):
        return False
    return bool(_curve_contains((FQ(x), FQ(y)), CURVE_B))


def _is_largest(y: int) -> bool:
    return y > FIELD_MODULUS - y


def _sqrt(value: FQ) -> int | None:
    # p = 3 mod 4, so a square root is value^((p+1)/4) when one exists
    root = value ** ((FIELD_MODULUS + 1) // 4)
    if root * root != value:
        return None
    return root.n


def _to_bytes(encoded: str | bytes) -> bytes:
    if isinstance(encoded, (bytes, bytearray)):
        return bytes(encoded)
    if not isinstance(encoded, str):
        raise SignatureDecodeError(f"expected hex string, got {type(encoded).__name__}")
    text = encoded.strip()
    if not text or text in ("0x", "0X"):
        raise SignatureDecodeError("empty signature")
    if len(text.removeprefix("0x").removeprefix("0X")) % 2:
        raise SignatureDecodeError("odd-length hex string")
    try:
        return bytes(HexBytes(text))
    except (ValueError, TypeError) as e:
        raise SignatureDecodeError(f"not valid hex: {e}") from None


def decode_g1(encoded: str | bytes) -> G1Point:
    """Decode a hex or raw encoded G1 point.

    Raises:
        SignatureDecodeError: On wrong length, out-of-range coordinates,
            the point at infinity, or a point that is not on the curve
    """
    data = _to_bytes(encoded)

    if len(data) == UNCOMPRESSED_SIZE:
        x = int.from_bytes(data[:32], "big")
        y = int.from_bytes(data[32:], "big")
        if x >= FIELD_MODULUS or y >= FIELD_MODULUS:
            raise SignatureDecodeError("coordinate exceeds field modulus")
        if x == 0 and y == 0:
            raise SignatureDecodeError("point at infinity")
        if not is_on_curve(x, y):
            raise SignatureDecodeError("point is not on the BN254 curve")
        return G1Point(x, y)

    if len(data) == COMPRESSED_SIZE:
        flags = data[0] & _FLAG_MASK
        if flags == _FLAG_INFINITY:
            raise SignatureDecodeError("point at infinity")
        if flags not in (_FLAG_SMALLEST, _FLAG_LARGEST):
            raise SignatureDecodeError(f"invalid compression flags 0x{flags:02x}")
        x = int.from_bytes(bytes([data[0] & ~_FLAG_MASK & 0xFF]) + data[1:], "big")
        if x >= FIELD_MODULUS:
            raise SignatureDecodeError("coordinate exceeds field modulus")
        y = _sqrt(FQ(x) ** 3 + CURVE_B)
        if y is None:
            raise SignatureDecodeError("x coordinate has no point on the BN254 curve")
        if _is_largest(y) != (flags == _FLAG_LARGEST):
            y = FIELD_MODULUS - y
        return G1Point(x, y)

    raise SignatureDecodeError(
        f"expected {UNCOMPRESSED_SIZE} or {COMPRESSED_SIZE} bytes, got {len(data)}"
    )


def encode_g1(point: G1Point, compressed: bool = False) -> bytes:
    """Encode a G1 point in the same wire forms ``decode_g1`` accepts."""
    if not is_on_curve(point.x, point.y):
        raise SignatureDecodeError("point is not on the BN254 curve")
    x_bytes = point.x.to_bytes(32, "big")
    if not compressed:
        return x_bytes + point.y.to_bytes(32, "big")
    flag = _FLAG_LARGEST if _is_largest(point.y) else _FLAG_SMALLEST
    return bytes([x_bytes[0] | flag]) + x_bytes[1:]
