"""Warm the stats cache for a list of scripts read from a file."""

from __future__ import annotations

import binascii
import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Protocol, Sequence

from .errors import IndexerError
from .history import compute_script_hash
from .rows import HASH_LEN

logger = logging.getLogger(__name__)

PRECACHE_THREADS = 16

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_P2PKH_VERSIONS = {0x00, 0x6F}
_P2SH_VERSIONS = {0x05, 0xC4}

_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_GENERATOR = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
_BECH32_CONST = 1
_BECH32M_CONST = 0x2BC830A3
_SEGWIT_HRPS = ("bc", "tb", "bcrt")


class _StatsSource(Protocol):
    def stats(self, scripthash: bytes) -> object: ...


def precache(chain: _StatsSource, scripthashes: Sequence[bytes]) -> None:
    """Compute (and so cache) the stats of every script hash, in parallel."""
    total = len(scripthashes)
    logger.info("Pre-caching stats and utxo set for %d scripthashes", total)

    def run(item: tuple[int, bytes]) -> None:
        index, scripthash = item
        if index % 5 == 0:
            logger.info("running pre-cache for scripthash %d/%d", index + 1, total)
        chain.stats(scripthash)

    with ThreadPoolExecutor(
        max_workers=PRECACHE_THREADS, thread_name_prefix="precache"
    ) as pool:
        for _ in pool.map(run, enumerate(scripthashes)):
            pass


def scripthashes_from_file(path: str | Path) -> list[bytes]:
    """Read ``type,value`` lines and turn each into a script hash."""
    try:
        handle = open(path, encoding="utf-8", newline=None)
    except OSError as exc:
        raise IndexerError("cannot open precache scripthash file") from exc
    result = []
    with handle:
        try:
            lines = handle.read().splitlines()
        except (OSError, UnicodeDecodeError) as exc:
            raise IndexerError("cannot read scripthash line") from exc
    for line in lines:
        cols = line.split(",")
        if len(cols) < 2:
            raise IndexerError(f"missing column in scripthash line {line!r}")
        result.append(to_scripthash(cols[0], cols[1]))
    return result


def _unhex(text: str) -> bytes:
    try:
        return binascii.unhexlify(text)
    except (binascii.Error, ValueError) as exc:
        raise IndexerError("invalid hex") from exc


def to_scripthash(script_type: str, script_str: str) -> bytes:
    """Script hash of an address, a hex script hash or a hex output script."""
    if script_type == "address":
        return compute_script_hash(_address_to_script(script_str))
    if script_type == "scripthash":
        data = _unhex(script_str)
        if len(data) != HASH_LEN:
            raise IndexerError("invalid hex")
        return data
    if script_type == "scriptpubkey":
        return compute_script_hash(_unhex(script_str))
    raise IndexerError("Invalid script type")


def _address_to_script(address: str) -> bytes:
    try:
        if address.lower().startswith(tuple(hrp + "1" for hrp in _SEGWIT_HRPS)):
            return _segwit_script(address)
        return _base58_script(address)
    except ValueError as exc:
        raise IndexerError("invalid address") from exc


def _double_sha256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _base58check_decode(text: str) -> bytes:
    number = 0
    for char in text:
        digit = _B58_ALPHABET.find(char)
        if digit < 0:
            raise ValueError(f"invalid base58 character {char!r}")
        number = number * 58 + digit
    body = number.to_bytes((number.bit_length() + 7) // 8, "big")
    leading_zeros = len(text) - len(text.lstrip("1"))
    data = b"\x00" * leading_zeros + body
    if len(data) < 4:
        raise ValueError("base58 data too short")
    payload, checksum = data[:-4], data[-4:]
    if _double_sha256(payload)[:4] != checksum:
        raise ValueError("invalid base58 checksum")
    return payload


def _base58_script(address: str) -> bytes:
    payload = _base58check_decode(address)
    if len(payload) != 21:
        raise ValueError("invalid base58 payload length")
    version, program = payload[0], payload[1:]
    if version in _P2PKH_VERSIONS:
        return b"\x76\xa9\x14" + program + b"\x88\xac"
    if version in _P2SH_VERSIONS:
        return b"\xa9\x14" + program + b"\x87"
    raise ValueError(f"unknown address version {version}")


def _bech32_polymod(values: list[int]) -> int:
    checksum = 1
    for value in values:
        top = checksum >> 25
        checksum = ((checksum & 0x1FFFFFF) << 5) ^ value
        for bit, generator in enumerate(_BECH32_GENERATOR):
            if (top >> bit) & 1:
                checksum ^= generator
    return checksum


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_5_to_8(values: list[int]) -> bytes:
    acc = 0
    bits = 0
    out = bytearray()
    for value in values:
        acc = ((acc << 5) | value) & 0xFFF
        bits += 5
        while bits >= 8:
            bits -= 8
            out.append((acc >> bits) & 0xFF)
    if bits >= 5 or (acc << (8 - bits)) & 0xFF:
        raise ValueError("invalid bech32 padding")
    return bytes(out)


def _segwit_script(address: str) -> bytes:
    if address.lower() != address and address.upper() != address:
        raise ValueError("mixed-case bech32 address")
    text = address.lower()
    sep = text.rfind("1")
    if sep < 1 or sep + 7 > len(text) or len(text) > 90:
        raise ValueError("invalid bech32 layout")
    hrp = text[:sep]
    if hrp not in _SEGWIT_HRPS:
        raise ValueError(f"unknown address prefix {hrp!r}")
    try:
        data = [_BECH32_CHARSET.index(c) for c in text[sep + 1 :]]
    except ValueError:
        raise ValueError("invalid bech32 character") from None
    const = _bech32_polymod(_hrp_expand(hrp) + data)
    values = data[:-6]
    if not values:
        raise ValueError("missing witness version")
    version = values[0]
    if version > 16:
        raise ValueError("invalid witness version")
    program = _convert_5_to_8(values[1:])
    if not 2 <= len(program) <= 40:
        raise ValueError("invalid witness program length")
    if version == 0:
        if const != _BECH32_CONST or len(program) not in (20, 32):
            raise ValueError("invalid version 0 witness program")
    elif const != _BECH32M_CONST:
        raise ValueError("invalid bech32m checksum")
    opcode = 0 if version == 0 else 0x50 + version
    return bytes([opcode, len(program)]) + program