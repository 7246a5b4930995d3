"""Stratum job templates, coinbase assembly and block header serialization."""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple

from .hashing import sha256d
from .targets import target_from_compact

__all__ = [
    "JobError",
    "JobTemplate",
    "Subscription",
    "ShareSubmission",
    "parse_job_template",
    "build_coinbase",
    "compute_merkle_root",
    "serialize_header",
]

_HEX_BYTES = re.compile(r"(?:[0-9a-fA-F]{2})*")
_SIGNED_HEX = re.compile(r"[+-]?[0-9a-fA-F]+")
_UNSIGNED_HEX = re.compile(r"\+?[0-9a-fA-F]+")
_HEADER = struct.Struct("<i32s32sIII")


class JobError(ValueError):
    """Raised when job data from the pool is malformed."""


@dataclass(frozen=True)
class JobTemplate:
    """A unit of work announced by the pool."""

    job_id: str
    version: int
    prevhash: bytes
    coinbase1: bytes
    coinbase2: bytes
    merkle_branch: Tuple[bytes, ...]
    compact_target: int
    ntime: int
    clean_jobs: bool
    network_target: int


@dataclass(frozen=True)
class Subscription:
    """Extranonce parameters assigned by the pool."""

    extranonce1: bytes
    extranonce2_size: int


@dataclass(frozen=True)
class ShareSubmission:
    """A share found by a worker, formatted for submission."""

    job_id: str
    extranonce2: str
    ntime: str
    nonce: str
    hash: bytes
    is_block_candidate: bool


def _decode_hex(text: str, what: str) -> bytes:
    if not _HEX_BYTES.fullmatch(text):
        raise JobError(f"invalid {what} hex")
    return bytes.fromhex(text)


def _parse_hex_int(text: str, what: str, *, signed: bool) -> int:
    pattern = _SIGNED_HEX if signed else _UNSIGNED_HEX
    if not pattern.fullmatch(text):
        raise JobError(f"invalid {what} hex")
    value = int(text, 16)
    low, high = (-(1 << 31), (1 << 31) - 1) if signed else (0, (1 << 32) - 1)
    if not low <= value <= high:
        raise JobError(f"invalid {what} hex")
    return value


def parse_job_template(
    job_id: str,
    prevhash: str,
    coinbase1: str,
    coinbase2: str,
    merkle_branch: Iterable[str],
    version: str,
    nbits: str,
    ntime: str,
    clean_jobs: bool,
) -> JobTemplate:
    """Build a :class:`JobTemplate` from the hex fields of ``mining.notify``."""
    prevhash_bytes = _decode_hex(prevhash, "prevhash")
    if len(prevhash_bytes) != 32:
        raise JobError("prevhash must be 32 bytes")
    prevhash_internal = b"".join(
        prevhash_bytes[offset:offset + 4][::-1] for offset in range(0, 32, 4)
    )

    coinbase1_bytes = _decode_hex(coinbase1, "coinbase1")
    coinbase2_bytes = _decode_hex(coinbase2, "coinbase2")
    branch = tuple(_decode_hex(node, "merkle branch") for node in merkle_branch)

    version_value = _parse_hex_int(version, "version", signed=True)
    bits = _parse_hex_int(nbits, "nbits", signed=False)
    ntime_value = _parse_hex_int(ntime, "ntime", signed=False)

    return JobTemplate(
        job_id=job_id,
        version=version_value,
        prevhash=prevhash_internal,
        coinbase1=coinbase1_bytes,
        coinbase2=coinbase2_bytes,
        merkle_branch=branch,
        compact_target=bits,
        ntime=ntime_value,
        clean_jobs=clean_jobs,
        network_target=target_from_compact(bits),
    )


def build_coinbase(template: JobTemplate, extranonce1: bytes, extranonce2: bytes) -> bytes:
    """Assemble the coinbase transaction around the two extranonces."""
    return template.coinbase1 + bytes(extranonce1) + bytes(extranonce2) + template.coinbase2


def compute_merkle_root(coinbase: bytes, merkle_branch: Sequence[bytes]) -> bytes:
    """Fold the merkle branch onto the coinbase hash, giving the root."""
    node = sha256d(coinbase)
    for sibling in merkle_branch:
        if len(sibling) != 32:
            raise JobError(f"invalid merkle branch element length: {len(sibling)}")
        node = sha256d(node + bytes(sibling))
    return node


def serialize_header(
    version: int,
    prevhash: bytes,
    merkle_root: bytes,
    ntime: int,
    bits: int,
    nonce: int,
) -> bytes:
    """Serialize an 80-byte block header."""
    if len(prevhash) != 32:
        raise ValueError("prevhash must be 32 bytes")
    if len(merkle_root) != 32:
        raise ValueError("merkle root must be 32 bytes")
    return _HEADER.pack(version, bytes(prevhash), bytes(merkle_root), ntime, bits, nonce)