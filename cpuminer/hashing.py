"""SHA-256 with an exposed midstate, used to hash block headers quickly."""

from __future__ import annotations

import hashlib
import struct
from typing import Tuple

__all__ = [
    "CPUNET_SUFFIX",
    "Midstate",
    "sha256d",
    "midstate_from_prefix",
    "hash_from_midstate",
]

CPUNET_SUFFIX = b"cpunet\0"

Midstate = Tuple[int, ...]

_MASK = 0xFFFFFFFF
_BLOCK = 64

_IV: Midstate = (
    0x6A09E667, 0xBB67AE85, 0x3C6EF372, 0xA54FF53A,
    0x510E527F, 0x9B05688C, 0x1F83D9AB, 0x5BE0CD19,
)

_K = (
    0x428A2F98, 0x71374491, 0xB5C0FBCF, 0xE9B5DBA5, 0x3956C25B, 0x59F111F1, 0x923F82A4, 0xAB1C5ED5,
    0xD807AA98, 0x12835B01, 0x243185BE, 0x550C7DC3, 0x72BE5D74, 0x80DEB1FE, 0x9BDC06A7, 0xC19BF174,
    0xE49B69C1, 0xEFBE4786, 0x0FC19DC6, 0x240CA1CC, 0x2DE92C6F, 0x4A7484AA, 0x5CB0A9DC, 0x76F988DA,
    0x983E5152, 0xA831C66D, 0xB00327C8, 0xBF597FC7, 0xC6E00BF3, 0xD5A79147, 0x06CA6351, 0x14292967,
    0x27B70A85, 0x2E1B2138, 0x4D2C6DFC, 0x53380D13, 0x650A7354, 0x766A0ABB, 0x81C2C92E, 0x92722C85,
    0xA2BFE8A1, 0xA81A664B, 0xC24B8B70, 0xC76C51A3, 0xD192E819, 0xD6990624, 0xF40E3585, 0x106AA070,
    0x19A4C116, 0x1E376C08, 0x2748774C, 0x34B0BCB5, 0x391C0CB3, 0x4ED8AA4A, 0x5B9CCA4F, 0x682E6FF3,
    0x748F82EE, 0x78A5636F, 0x84C87814, 0x8CC70208, 0x90BEFFFA, 0xA4506CEB, 0xBEF9A3F7, 0xC67178F2,
)


def _rotr(value: int, count: int) -> int:
    return ((value >> count) | (value << (32 - count))) & _MASK


def _compress(state: Midstate, block: bytes) -> Midstate:
    w = list(struct.unpack(">16I", block))
    for t in range(16, 64):
        x, y = w[t - 15], w[t - 2]
        s0 = _rotr(x, 7) ^ _rotr(x, 18) ^ (x >> 3)
        s1 = _rotr(y, 17) ^ _rotr(y, 19) ^ (y >> 10)
        w.append((w[t - 16] + s0 + w[t - 7] + s1) & _MASK)

    a, b, c, d, e, f, g, h = state
    for k, word in zip(_K, w):
        big_s1 = _rotr(e, 6) ^ _rotr(e, 11) ^ _rotr(e, 25)
        choose = (e & f) ^ (~e & g)
        temp1 = h + big_s1 + choose + k + word
        big_s0 = _rotr(a, 2) ^ _rotr(a, 13) ^ _rotr(a, 22)
        majority = (a & b) ^ (a & c) ^ (b & c)
        h, g, f, e = g, f, e, (d + temp1) & _MASK
        d, c, b, a = c, b, a, (temp1 + big_s0 + majority) & _MASK

    return tuple((s + v) & _MASK for s, v in zip(state, (a, b, c, d, e, f, g, h)))


def sha256d(data: bytes) -> bytes:
    """Return SHA-256 applied twice to ``data``."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def midstate_from_prefix(prefix: bytes) -> Midstate:
    """Return the SHA-256 state after absorbing a 64-byte header prefix."""
    if len(prefix) != _BLOCK:
        raise ValueError(f"header prefix must be {_BLOCK} bytes, got {len(prefix)}")
    return _compress(_IV, bytes(prefix))


def hash_from_midstate(midstate: Midstate, tail: bytes, suffix: bytes) -> bytes:
    """Finish hashing ``tail + suffix`` after a 64-byte prefix, then hash again."""
    data = bytes(tail) + bytes(suffix)
    total = _BLOCK + len(data)
    padding = b"\x80" + b"\x00" * ((55 - total) % _BLOCK)
    message = data + padding + (total * 8).to_bytes(8, "big")

    state = tuple(midstate)
    for offset in range(0, len(message), _BLOCK):
        state = _compress(state, message[offset:offset + _BLOCK])
    first = struct.pack(">8I", *state)
    return hashlib.sha256(first).digest()