import struct

import pytest

from chainindex.db import DBRow
from chainindex.rows import (
    BlockRow,
    OutPoint,
    ScriptStats,
    StatsCacheRow,
    TxConfRow,
    TxEdgeRow,
    TxOutRow,
    TxRow,
    UtxoCacheRow,
    full_hash,
)

TXID = bytes(range(32))
OTHER = bytes(range(32, 64))
BLOCK = b"\xaa" * 32


def test_full_hash_accepts_32_bytes():
    assert full_hash(bytearray(TXID)) == TXID


@pytest.mark.parametrize("size", [0, 31, 33])
def test_full_hash_rejects_other_lengths(size):
    with pytest.raises(ValueError):
        full_hash(b"\x00" * size)


def test_outpoint_rejects_short_txid():
    with pytest.raises(ValueError):
        OutPoint(b"\x01", 0)


def test_script_stats_round_trip():
    stats = ScriptStats(3, 5, 2, 1000, 400)
    assert ScriptStats.from_bytes(stats.to_bytes()) == stats


def test_script_stats_default_is_zero():
    assert ScriptStats.from_bytes(ScriptStats().to_bytes()) == ScriptStats(0, 0, 0, 0, 0)


def test_script_stats_rejects_bad_length():
    with pytest.raises(ValueError):
        ScriptStats.from_bytes(ScriptStats().to_bytes()[:-1])


def test_tx_row_key_matches_into_row():
    row = TxRow(TXID, b"rawtx").into_row()
    assert row.key == TxRow.key(TXID)
    assert row.key == b"T" + TXID
    assert row.value == b"rawtx"


def test_tx_conf_row_round_trip_and_filter():
    conf = TxConfRow(TXID, BLOCK)
    row = conf.into_row()
    assert row.key.startswith(TxConfRow.filter(TXID))
    assert row.value == b""
    assert TxConfRow.from_row(row) == conf


def test_tx_conf_row_rejects_wrong_code():
    row = DBRow(b"X" + TXID + BLOCK, b"")
    with pytest.raises(ValueError):
        TxConfRow.from_row(row)


def test_tx_out_row_key_is_little_endian_vout():
    outpoint = OutPoint(TXID, 1)
    assert TxOutRow.key(outpoint) == b"O" + TXID + b"\x01\x00"
    row = TxOutRow(TXID, 1, b"txout").into_row()
    assert row.key == TxOutRow.key(outpoint)
    assert row.value == b"txout"


def test_block_row_keys():
    assert BlockRow.new_header(BLOCK, b"hdr").into_row() == DBRow(b"B" + BLOCK, b"hdr")
    assert BlockRow.new_meta(BLOCK, b"meta").into_row().key == BlockRow.meta_key(BLOCK)
    assert BlockRow.new_txids(BLOCK, []).into_row().key == BlockRow.txids_key(BLOCK)
    done = BlockRow.new_done(BLOCK).into_row()
    assert done.key.startswith(BlockRow.done_filter())
    assert done.value == b""
    assert BlockRow.new_header(BLOCK, b"").into_row().key.startswith(BlockRow.header_filter())


def test_block_row_txids_encoding():
    value = BlockRow.new_txids(BLOCK, [TXID, OTHER]).into_row().value
    (count,) = struct.unpack_from("<Q", value, 0)
    assert count == 2
    (first_len,) = struct.unpack_from("<Q", value, 8)
    assert first_len == 32
    assert value[16:48] == TXID
    assert value.endswith(OTHER)


def test_block_row_from_row_round_trip():
    original = BlockRow.new_header(BLOCK, b"header-bytes")
    assert BlockRow.from_row(original.into_row()) == original


def test_block_row_from_row_rejects_short_key():
    with pytest.raises(ValueError):
        BlockRow.from_row(DBRow(b"B" + b"\x00" * 5, b""))


def test_tx_edge_row_round_trip_and_filter():
    edge = TxEdgeRow(TXID, 7, OTHER, 3)
    row = edge.into_row()
    assert row.key.startswith(TxEdgeRow.filter(OutPoint(TXID, 7)))
    assert not row.key.startswith(TxEdgeRow.filter(OutPoint(TXID, 8)))
    assert TxEdgeRow.from_row(row) == edge


def test_tx_edge_row_rejects_truncated_key():
    row = TxEdgeRow(TXID, 7, OTHER, 3).into_row()
    with pytest.raises(ValueError):
        TxEdgeRow.from_row(DBRow(row.key[:-1], b""))


def test_stats_cache_row_layout():
    stats = ScriptStats(1, 2, 3, 4, 5)
    row = StatsCacheRow(TXID, stats, BLOCK).into_row()
    assert row.key == StatsCacheRow.key(TXID)
    size = len(stats.to_bytes())
    assert ScriptStats.from_bytes(row.value[:size]) == stats
    assert row.value.endswith(BLOCK)


def test_utxo_cache_row_layout_is_sorted():
    utxos = {OutPoint(OTHER, 0): (10, 500), OutPoint(TXID, 2): (9, 700)}
    row = UtxoCacheRow(TXID, utxos, BLOCK).into_row()
    assert row.key == UtxoCacheRow.key(TXID)
    (count,) = struct.unpack_from("<Q", row.value, 0)
    assert count == 2
    assert row.value[16:48] == TXID
    vout, height, value = struct.unpack_from("<IIQ", row.value, 48)
    assert (vout, height, value) == (2, 9, 700)
    assert row.value.endswith(BLOCK)


def test_utxo_cache_row_is_deterministic():
    first = {OutPoint(TXID, 1): (1, 1), OutPoint(OTHER, 1): (2, 2)}
    second = dict(reversed(list(first.items())))
    assert (
        UtxoCacheRow(TXID, first, BLOCK).into_row()
        == UtxoCacheRow(TXID, second, BLOCK).into_row()
    )