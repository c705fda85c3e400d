"""
BN254 G1 helpers

Thin layer over py_ecc.optimized_bn128: compressed point encoding as a
decimal-friendly integer, domain-separated hashing into the scalar field
and try-and-increment hashing onto the curve. G1 has cofactor 1, so every
curve point lies in the prime-order subgroup.

The arithmetic is pure Python and not constant time.
"""

import hashlib
from typing import Tuple, Union

from py_ecc.optimized_bn128 import (
    G1,
    FQ,
    add,
    b,
    curve_order,
    field_modulus,
    is_inf,
    is_on_curve,
    multiply,
    normalize,
)

CURVE_ORDER = curve_order
FIELD_MODULUS = field_modulus
GENERATOR = G1

Point = Tuple[FQ, FQ, FQ]

_DOMAIN_PREFIX = b"anonvote/v1/"

# Field and scalar elements need at most 78 decimal digits
MAX_DECIMAL_DIGITS = 80


def is_decimal(value: str) -> bool:
    """ASCII decimal digits only, short enough to be a field element"""
    return 0 < len(value) <= MAX_DECIMAL_DIGITS and value.isascii() and value.isdigit()



def _encode_part(part: Union[int, str, bytes]) -> bytes:
    if isinstance(part, bool):
        raise TypeError("bool is not a hashable part")
    if isinstance(part, int):
        if part < 0:
            raise ValueError("negative integers are not hashable parts")
        data = part.to_bytes(max(32, (part.bit_length() + 7) // 8), "big")
    elif isinstance(part, str):
        data = part.encode("utf-8")
    elif isinstance(part, (bytes, bytearray)):
        data = bytes(part)
    else:
        raise TypeError(f"unsupported part type: {type(part).__name__}")
    return len(data).to_bytes(4, "big") + data


def _transcript(domain: str, parts) -> bytes:
    return _DOMAIN_PREFIX + domain.encode("utf-8") + b"".join(_encode_part(p) for p in parts)


def hash_to_scalar(domain: str, *parts) -> int:
    """Hash into [1, r-1]"""
    digest = hashlib.sha512(_transcript(domain, parts)).digest()
    return int.from_bytes(digest, "big") % (CURVE_ORDER - 1) + 1


def hash_to_field(domain: str, *parts) -> int:
    """Hash into the scalar field [0, r-1]"""
    digest = hashlib.sha256(_transcript(domain, parts)).digest()
    return int.from_bytes(digest, "big") % CURVE_ORDER


def _sqrt(value: int):
    # p = 3 mod 4
    root = pow(value, (FIELD_MODULUS + 1) // 4, FIELD_MODULUS)
    if root * root % FIELD_MODULUS != value % FIELD_MODULUS:
        return None
    return root


def hash_to_point(domain: str, *parts) -> Point:
    """Try-and-increment map onto G1; the discrete log is unknown"""
    base = _transcript(domain, parts)
    counter = 0
    while True:
        digest = hashlib.sha256(base + counter.to_bytes(4, "big")).digest()
        x = int.from_bytes(digest, "big") % FIELD_MODULUS
        y = _sqrt((x * x * x + b.n) % FIELD_MODULUS)
        if y is not None and y != 0:
            if y & 1:
                y = FIELD_MODULUS - y
            return (FQ(x), FQ(y), FQ(1))
        counter += 1


def scalar_mult(point: Point, scalar: int) -> Point:
    return multiply(point, scalar % CURVE_ORDER)


def point_add(left: Point, right: Point) -> Point:
    return add(left, right)


def encode_point(point: Point) -> int:
    """Compressed encoding: 2*X + parity(Y)"""
    if is_inf(point):
        raise ValueError("cannot encode the point at infinity")
    x, y = normalize(point)
    return x.n * 2 + (y.n & 1)


def decode_point(value: int) -> Point:
    """Inverse of encode_point; raises ValueError for anything off-curve"""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError("point encoding must be a non-negative integer")
    x, parity = value >> 1, value & 1
    if x >= FIELD_MODULUS:
        raise ValueError("x coordinate out of range")
    y = _sqrt((x * x * x + b.n) % FIELD_MODULUS)
    if y is None:
        raise ValueError("not a curve point")
    if (y & 1) != parity:
        y = FIELD_MODULUS - y
        if y == FIELD_MODULUS:
            raise ValueError("not a curve point")
    point = (FQ(x), FQ(y), FQ(1))
    if not is_on_curve(point, b):
        raise ValueError("not a curve point")
    return point
