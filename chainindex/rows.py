"""Key/value row layouts of the transaction store, history and cache databases."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .db import DBRow

HASH_LEN = 32

_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_STATS = struct.Struct("<5Q")


def full_hash(data: bytes) -> bytes:
    """Return ``data`` as a 32-byte hash, raising ValueError for any other length."""
    result = bytes(data)
    if len(result) != HASH_LEN:
        raise ValueError(f"expected {HASH_LEN} bytes, got {len(result)}")
    return result


def _u16(value: int) -> bytes:
    return _U16.pack(value & 0xFFFF)


def _encode_hash(value: bytes) -> bytes:
    # hashes are written as length-prefixed byte strings
    data = full_hash(value)
    return _U64.pack(len(data)) + data


def _parse_fixed(row_key: bytes, code: bytes, length: int, what: str) -> bytes:
    key = bytes(row_key)
    if len(key) != length or key[:1] != code:
        raise ValueError(f"malformed {what} key: {key.hex()}")
    return key


@dataclass(frozen=True, order=True)
class OutPoint:
    """A reference to one output of a transaction."""

    txid: bytes
    vout: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", full_hash(self.txid))
        if self.vout < 0:
            raise ValueError("vout must not be negative")


@dataclass
class ScriptStats:
    """Aggregated funding and spending counters of one script."""

    tx_count: int = 0
    funded_txo_count: int = 0
    spent_txo_count: int = 0
    funded_txo_sum: int = 0
    spent_txo_sum: int = 0

    def to_bytes(self) -> bytes:
        return _STATS.pack(
            self.tx_count,
            self.funded_txo_count,
            self.spent_txo_count,
            self.funded_txo_sum,
            self.spent_txo_sum,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "ScriptStats":
        if len(data) != _STATS.size:
            raise ValueError(f"expected {_STATS.size} bytes of stats, got {len(data)}")
        return cls(*_STATS.unpack(bytes(data)))


@dataclass(frozen=True)
class TxRow:
    """``T{txid}`` → raw transaction."""

    txid: bytes
    raw_tx: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", full_hash(self.txid))

    @staticmethod
    def key(prefix: bytes) -> bytes:
        return b"T" + bytes(prefix)

    def into_row(self) -> DBRow:
        return DBRow(b"T" + self.txid, bytes(self.raw_tx))


@dataclass(frozen=True)
class TxConfRow:
    """``C{txid}{blockhash}`` → empty: the block confirming a transaction."""

    txid: bytes
    blockhash: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", full_hash(self.txid))
        object.__setattr__(self, "blockhash", full_hash(self.blockhash))

    @staticmethod
    def filter(prefix: bytes) -> bytes:
        return b"C" + bytes(prefix)

    def into_row(self) -> DBRow:
        return DBRow(b"C" + self.txid + self.blockhash, b"")

    @classmethod
    def from_row(cls, row: DBRow) -> "TxConfRow":
        key = _parse_fixed(row.key, b"C", 1 + 2 * HASH_LEN, "TxConf")
        return cls(key[1 : 1 + HASH_LEN], key[1 + HASH_LEN :])


@dataclass(frozen=True)
class TxOutRow:
    """``O{txid}{vout}`` → serialized output."""

    txid: bytes
    vout: int
    txout: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", full_hash(self.txid))

    @staticmethod
    def key(outpoint: OutPoint) -> bytes:
        return b"O" + full_hash(outpoint.txid) + _u16(outpoint.vout)

    def into_row(self) -> DBRow:
        return DBRow(b"O" + self.txid + _u16(self.vout), bytes(self.txout))


@dataclass(frozen=True)
class BlockRow:
    """Per-block rows: header ``B``, txids ``X``, metadata ``M`` and done marker ``D``."""

    code: bytes
    hash: bytes
    value: bytes = b""

    def __post_init__(self) -> None:
        if len(self.code) != 1:
            raise ValueError("block row code must be a single byte")
        object.__setattr__(self, "hash", full_hash(self.hash))

    @classmethod
    def new_header(cls, hash: bytes, header: bytes) -> "BlockRow":
        return cls(b"B", hash, bytes(header))

    @classmethod
    def new_txids(cls, hash: bytes, txids: Iterable[bytes]) -> "BlockRow":
        ids = list(txids)
        value = _U64.pack(len(ids)) + b"".join(_encode_hash(txid) for txid in ids)
        return cls(b"X", hash, value)

    @classmethod
    def new_meta(cls, hash: bytes, meta: bytes) -> "BlockRow":
        """Build the metadata row from already serialized block metadata."""
        return cls(b"M", hash, bytes(meta))

    @classmethod
    def new_done(cls, hash: bytes) -> "BlockRow":
        return cls(b"D", hash, b"")

    @staticmethod
    def header_filter() -> bytes:
        return b"B"

    @staticmethod
    def txids_key(hash: bytes) -> bytes:
        return b"X" + full_hash(hash)

    @staticmethod
    def meta_key(hash: bytes) -> bytes:
        return b"M" + full_hash(hash)

    @staticmethod
    def done_filter() -> bytes:
        return b"D"

    def into_row(self) -> DBRow:
        return DBRow(self.code + self.hash, self.value)

    @classmethod
    def from_row(cls, row: DBRow) -> "BlockRow":
        key = bytes(row.key)
        if len(key) != 1 + HASH_LEN:
            raise ValueError(f"malformed block key: {key.hex()}")
        return cls(key[:1], key[1:], bytes(row.value))


@dataclass(frozen=True)
class TxEdgeRow:
    """``S{funding-txid:vout}{spending-txid:vin}`` → empty: a spend edge."""

    funding_txid: bytes
    funding_vout: int
    spending_txid: bytes
    spending_vin: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "funding_txid", full_hash(self.funding_txid))
        object.__setattr__(self, "spending_txid", full_hash(self.spending_txid))

    @staticmethod
    def filter(outpoint: OutPoint) -> bytes:
        return b"S" + full_hash(outpoint.txid) + _u16(outpoint.vout)

    def into_row(self) -> DBRow:
        key = (
            b"S"
            + self.funding_txid
            + _u16(self.funding_vout)
            + self.spending_txid
            + _u16(self.spending_vin)
        )
        return DBRow(key, b"")

    @classmethod
    def from_row(cls, row: DBRow) -> "TxEdgeRow":
        key = _parse_fixed(row.key, b"S", 1 + 2 * (HASH_LEN + 2), "TxEdge")
        funding_txid = key[1 : 1 + HASH_LEN]
        (funding_vout,) = _U16.unpack_from(key, 1 + HASH_LEN)
        spending_start = 3 + HASH_LEN
        spending_txid = key[spending_start : spending_start + HASH_LEN]
        (spending_vin,) = _U16.unpack_from(key, spending_start + HASH_LEN)
        return cls(funding_txid, funding_vout, spending_txid, spending_vin)


@dataclass(frozen=True)
class StatsCacheRow:
    """``A{scripthash}`` → cached stats and the block they are valid up to."""

    scripthash: bytes
    stats: ScriptStats
    blockhash: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "scripthash", full_hash(self.scripthash))
        object.__setattr__(self, "blockhash", full_hash(self.blockhash))

    @staticmethod
    def key(scripthash: bytes) -> bytes:
        return b"A" + bytes(scripthash)

    def into_row(self) -> DBRow:
        value = self.stats.to_bytes() + _encode_hash(self.blockhash)
        return DBRow(b"A" + self.scripthash, value)


@dataclass(frozen=True)
class UtxoCacheRow:
    """``U{scripthash}`` → cached unspent outputs and the block they are valid up to.

    ``utxos`` maps each outpoint to ``(block_height, value)``.
    """

    scripthash: bytes
    utxos: Mapping[OutPoint, tuple[int, int]] = field(hash=False)
    blockhash: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "scripthash", full_hash(self.scripthash))
        object.__setattr__(self, "blockhash", full_hash(self.blockhash))

    @staticmethod
    def key(scripthash: bytes) -> bytes:
        return b"U" + bytes(scripthash)

    def into_row(self) -> DBRow:
        entries = sorted(self.utxos.items())
        parts = [_U64.pack(len(entries))]
        for outpoint, (height, value) in entries:
            parts.append(_encode_hash(outpoint.txid))
            parts.append(_U32.pack(outpoint.vout))
            parts.append(_U32.pack(height))
            parts.append(_U64.pack(value))
        parts.append(_encode_hash(self.blockhash))
        return DBRow(b"U" + self.scripthash, b"".join(parts))