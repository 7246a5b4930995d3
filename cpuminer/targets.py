"""Proof-of-work targets: compact decoding, difficulty and fudge scaling."""

from __future__ import annotations

import math
import sys
from fractions import Fraction

__all__ = [
    "MAX_TARGET",
    "target_from_compact",
    "clamp_target",
    "share_target_from_difficulty",
    "apply_fudge_to_target",
    "hash_meets_target",
]

MAX_TARGET = 0xFFFF << 208
"""The difficulty-one target, the easiest target allowed."""

_U256_MASK = (1 << 256) - 1


def target_from_compact(bits: int) -> int:
    """Decode a compact ``nBits`` value into a 256-bit target."""
    bits &= 0xFFFFFFFF
    exponent = bits >> 24
    if exponent <= 3:
        mantissa = (bits & 0xFFFFFF) >> (8 * (3 - exponent))
        shift = 0
    else:
        mantissa = bits & 0xFFFFFF
        shift = 8 * (exponent - 3)
    if mantissa > 0x7FFFFF:
        return 0
    return (mantissa << (shift & 0xFF)) & _U256_MASK


def clamp_target(value: int) -> int:
    """Keep the low 256 bits of a non-negative value, capped at MAX_TARGET."""
    if value < 0:
        return 0
    return min(value & _U256_MASK, MAX_TARGET)


def share_target_from_difficulty(difficulty: float) -> int:
    """Return the share target for a pool difficulty."""
    if not math.isfinite(difficulty) or difficulty <= 0.0:
        return MAX_TARGET
    ratio = Fraction(difficulty)
    if ratio == 0:
        return MAX_TARGET
    return clamp_target(math.floor(Fraction(MAX_TARGET) / ratio))


def apply_fudge_to_target(target: int, fudge: float) -> int:
    """Scale a target by ``fudge``, making shares easier when it exceeds one."""
    if not math.isfinite(fudge) or fudge <= 0.0:
        return target
    if abs(fudge - 1.0) < sys.float_info.epsilon:
        return target
    return clamp_target(math.floor(target * Fraction(fudge)))


def hash_meets_target(hash_bytes: bytes, target: int) -> bool:
    """Tell whether a hash, read as a little-endian number, is within target."""
    if target == 0:
        return False
    return int.from_bytes(hash_bytes, "little") <= target