"""Script history rows: funding and spending entries keyed by script hash and height."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import Union

from .db import DBRow
from .rows import HASH_LEN, OutPoint, full_hash

HISTORY_CODE = b"H"
ADDRESS_CODE = b"a"

# history keys are big-endian so that lexicographic order follows block height
_HEADER = struct.Struct(">B32sII")
_FUNDING = struct.Struct(">32sHQ")
_SPENDING = struct.Struct(">32sH32sHQ")
_HEIGHT = struct.Struct(">I")
_U32_MAX = 0xFFFFFFFF

_FUNDING_TAG = 0
_SPENDING_TAG = 1


def _check_u16(value: int, name: str) -> None:
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"{name} out of range: {value}")


def _check_u64(value: int, name: str) -> None:
    if not 0 <= value <= 0xFFFFFFFFFFFFFFFF:
        raise ValueError(f"{name} out of range: {value}")


def _check_u32(value: int, name: str) -> None:
    if not 0 <= value <= _U32_MAX:
        raise ValueError(f"{name} out of range: {value}")


def _code_byte(code: Union[int, bytes]) -> int:
    if isinstance(code, (bytes, bytearray)):
        if len(code) != 1:
            raise ValueError("code must be a single byte")
        return code[0]
    if not 0 <= code <= 0xFF:
        raise ValueError(f"code out of range: {code}")
    return code


@dataclass(frozen=True)
class FundingInfo:
    """An output of ``txid`` that pays to the script."""

    txid: bytes
    vout: int
    value: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", full_hash(self.txid))
        _check_u16(self.vout, "vout")
        _check_u64(self.value, "value")

    def get_funded_outpoint(self) -> OutPoint:
        """The funded output itself."""
        return OutPoint(self.txid, self.vout)

    def _encode(self) -> bytes:
        return _FUNDING.pack(self.txid, self.vout, self.value)


@dataclass(frozen=True)
class SpendingInfo:
    """Input ``vin`` of ``txid`` spending output ``prev_vout`` of ``prev_txid``."""

    txid: bytes
    vin: int
    prev_txid: bytes
    prev_vout: int
    value: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", full_hash(self.txid))
        object.__setattr__(self, "prev_txid", full_hash(self.prev_txid))
        _check_u16(self.vin, "vin")
        _check_u16(self.prev_vout, "prev_vout")
        _check_u64(self.value, "value")

    def get_funded_outpoint(self) -> OutPoint:
        """The previous output being spent."""
        return OutPoint(self.prev_txid, self.prev_vout)

    def _encode(self) -> bytes:
        return _SPENDING.pack(
            self.txid, self.vin, self.prev_txid, self.prev_vout, self.value
        )


TxHistoryInfo = Union[FundingInfo, SpendingInfo]


@dataclass(frozen=True)
class TxHistoryKey:
    """Key of a history row: code, script hash, confirming height and entry."""

    code: int
    hash: bytes
    confirmed_height: int
    txinfo: TxHistoryInfo

    def __post_init__(self) -> None:
        object.__setattr__(self, "code", _code_byte(self.code))
        object.__setattr__(self, "hash", full_hash(self.hash))
        _check_u32(self.confirmed_height, "confirmed_height")


@dataclass(frozen=True)
class TxHistoryRow:
    """``H{scripthash}{height}{F|S}{entry}`` → empty."""

    key: TxHistoryKey

    @classmethod
    def from_script(
        cls, script: bytes, confirmed_height: int, txinfo: TxHistoryInfo
    ) -> "TxHistoryRow":
        """Build a history row for the script that ``txinfo`` funds or spends."""
        return cls(
            TxHistoryKey(
                HISTORY_CODE[0], compute_script_hash(script), confirmed_height, txinfo
            )
        )

    @staticmethod
    def filter(code: Union[int, bytes], hash_prefix: bytes) -> bytes:
        return bytes([_code_byte(code)]) + bytes(hash_prefix)

    @staticmethod
    def prefix_end(code: Union[int, bytes], hash: bytes) -> bytes:
        return bytes([_code_byte(code)]) + full_hash(hash) + _HEIGHT.pack(_U32_MAX)

    @staticmethod
    def prefix_height(code: Union[int, bytes], hash: bytes, height: int) -> bytes:
        _check_u32(height, "height")
        return bytes([_code_byte(code)]) + full_hash(hash) + _HEIGHT.pack(height)

    def into_row(self) -> DBRow:
        info = self.key.txinfo
        tag = _FUNDING_TAG if isinstance(info, FundingInfo) else _SPENDING_TAG
        key = (
            _HEADER.pack(self.key.code, self.key.hash, self.key.confirmed_height, tag)
            + info._encode()
        )
        return DBRow(key, b"")

    @classmethod
    def from_row(cls, row: DBRow) -> "TxHistoryRow":
        data = bytes(row.key)
        if len(data) < _HEADER.size:
            raise ValueError(f"malformed history key: {data.hex()}")
        code, hash_, height, tag = _HEADER.unpack_from(data)
        body = data[_HEADER.size :]
        info: TxHistoryInfo
        if tag == _FUNDING_TAG and len(body) == _FUNDING.size:
            info = FundingInfo(*_FUNDING.unpack(body))
        elif tag == _SPENDING_TAG and len(body) == _SPENDING.size:
            info = SpendingInfo(*_SPENDING.unpack(body))
        else:
            raise ValueError(f"malformed history key: {data.hex()}")
        return cls(TxHistoryKey(code, hash_, height, info))

    def get_txid(self) -> bytes:
        return self.key.txinfo.txid

    def get_funded_outpoint(self) -> OutPoint:
        return self.key.txinfo.get_funded_outpoint()


def compute_script_hash(script: bytes) -> bytes:
    """SHA-256 of the script bytes."""
    digest = hashlib.sha256(bytes(script)).digest()
    assert len(digest) == HASH_LEN
    return digest


def addr_search_row(address: str) -> DBRow:
    """Row making ``address`` findable by prefix search."""
    return DBRow(ADDRESS_CODE + address.encode(), b"")


def addr_search_filter(prefix: str) -> bytes:
    """Scan prefix for addresses starting with ``prefix``."""
    return ADDRESS_CODE + prefix.encode()