# chainindex

`chainindex` provides the pieces of an ordered key-value index of blockchain
data: an SQLite-backed store with prefix scans, the byte layouts of the rows
kept in it (raw transactions, confirmations, outputs, block headers, spend
edges, script history and cached per-script data), a reader for the
`blk*.dat` files a node writes, a ZeroMQ subscriber for new-block
notifications, a metrics registry in the Prometheus text format, and an asset
registry kept in sync with a directory of JSON files.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

| Module | What it holds |
| --- | --- |
| `chainindex.errors` | `IndexerError` and its subclasses `ConnectionFailure`, `RpcError`, `Interrupted`, `TooPopular` |
| `chainindex.db` | `DB`, an ordered key-value store with prefix scans; `DBRow`, `DBFlush`, `IncompatibleDatabase` |
| `chainindex.metrics` | `Metrics` registry with `Counter`, `Gauge`, `Histogram`, `MetricVec`; `Stats` and `parse_stats()` |
| `chainindex.rows` | row layouts `TxRow`, `TxConfRow`, `TxOutRow`, `BlockRow`, `TxEdgeRow`, `StatsCacheRow`, `UtxoCacheRow`; `OutPoint`, `ScriptStats`, `full_hash` |
| `chainindex.history` | script history rows: `FundingInfo`, `SpendingInfo`, `TxHistoryKey`, `TxHistoryRow`, `compute_script_hash`, `addr_search_row`, `addr_search_filter` |
| `chainindex.fetch` | reading block files: `blkfile_apply_xor_key`, `parse_blocks`, `blkfiles_reader`, `blkfiles_parser`, `Fetcher`, `FetchFrom` |
| `chainindex.precache` | `scripthashes_from_file`, `to_scripthash`, `precache` |
| `chainindex.zmqfeed` | `start` a subscriber for `hashblock` notifications; `parse_notification` |
| `chainindex.registry` | `AssetRegistry`, `AssetMeta`, `AssetSorting`, `AssetSortField`, `AssetSortDir` |

## The database

```python
from chainindex.db import DB, DBFlush, DBRow

db = DB.open("/var/lib/chainindex/txstore", light_mode=False, initial_sync_compaction=False)
db.write([DBRow(b"Tkey", b"value"), DBRow(b"Tother", b"")], DBFlush.ENABLE)

for row in db.iter_scan(b"T"):
    print(row.key, row.value)

db.close()
```

`DB.open` creates the directory and an SQLite file in it if needed, and
records a version marker on first use. Opening a database written with a
different version, or with a different light-mode setting, raises
`IncompatibleDatabase`: the index has to be rebuilt. `DB` is also a context
manager that closes itself.

`iter_scan(prefix)` yields rows in key order while the key starts with
`prefix`; `iter_scan_from(prefix, start_at)` starts at `start_at`;
`iter_scan_reverse(prefix, prefix_max)` walks backwards from the last key not
greater than `prefix_max`. `write` stores a batch in one transaction;
`DBFlush.ENABLE` makes it fully synced. `get`, `multi_get`, `put` and
`put_sync` work on single keys.

## Rows and script history

Each row class builds the `DBRow` it is stored as with `into_row()`, and the
scan prefixes or lookup keys that find it (`TxConfRow.filter`,
`TxOutRow.key`, `BlockRow.txids_key`, `TxEdgeRow.filter`, ...). Rows that are
read back have a `from_row` class method. All hashes are 32 bytes;
`full_hash` raises `ValueError` for any other length.

History keys are ordered by script hash and then by confirmation height
(big-endian), so a scan from `TxHistoryRow.prefix_height(code, hash, height)`
returns everything confirmed at or after `height`, and
`TxHistoryRow.prefix_end(code, hash)` is the upper bound for a reverse scan:

```python
from chainindex.history import FundingInfo, TxHistoryRow, compute_script_hash

row = TxHistoryRow.from_script(script, 100, FundingInfo(txid, 0, 5000))
db.write([row.into_row()], DBFlush.ENABLE)

scripthash = compute_script_hash(script)
for raw in db.iter_scan_from(TxHistoryRow.filter(b"H", scripthash),
                             TxHistoryRow.prefix_height(b"H", scripthash, 0)):
    entry = TxHistoryRow.from_row(raw)
    print(entry.key.confirmed_height, entry.get_funded_outpoint())
```

## Reading block files

```python
from pathlib import Path
from chainindex.fetch import blkfiles_parser, blkfiles_reader

files = sorted(Path("/data/blocks").glob("blk*.dat"))
blocks = blkfiles_parser(blkfiles_reader(files, xor_key=None), magic=0xD9B4BEF9)
blocks.map(lambda batch: print(len(batch), "blocks"))
```

Each file is read and parsed in its own background thread; a `Fetcher` holds
at most one item waiting, and re-raises an error from its producer to the
consumer. Files stored with an 8-byte xor key are decoded with
`blkfile_apply_xor_key`. `parse_blocks` finds each block by its network magic,
skips stray bytes and entries whose body was never written, and returns
`(raw_block_bytes, size)` pairs; the blocks themselves are not decoded.

## Pre-caching

`scripthashes_from_file(path)` reads lines of the form `type,value`, where
`type` is `address` (base58 or bech32/bech32m for the `bc`, `tb` and `bcrt`
prefixes), `scripthash` (32 bytes of hex) or `scriptpubkey` (hex), and returns
their script hashes. `precache(chain, scripthashes)` calls `chain.stats(...)`
for each of them on 16 threads; `chain` is any object with a `stats` method.

## Block notifications

`zmqfeed.start(url, callback)` subscribes to `hashblock` messages at `url`
and calls `callback` with each block hash in internal (reversed) byte order,
from a daemon thread that it returns.

## Asset registry

```python
from chainindex.registry import AssetRegistry, AssetSorting

registry = AssetRegistry("/var/lib/asset-registry")
registry.fs_sync()
sorting = AssetSorting.from_query_params({"sort_field": "name", "sort_dir": "desc"})
total, page = registry.list(0, 25, sorting)
```

The registry directory holds two-character sub-directories of
`<asset id>.json` files. `fs_sync` only re-reads files whose modification time
changed; `spawn_sync(interval)` repeats it in a background thread whose
`stop()` ends it. An unknown sort field or direction raises `IndexerError`.

## Metrics

`Metrics(addr)` hands out counters, gauges and histograms, alone or as label
vectors, and `gather()` renders them in the Prometheus text format. `start()`
serves that text over HTTP at `addr` and exports the process's CPU time,
resident memory and open file descriptors every five seconds; `stop()` shuts
both down.

## What the package does not do

There is no indexer that fetches blocks from a node and fills the databases,
no object that opens the transaction, history and cache databases together,
and no query layer that folds history into script statistics or unspent
outputs or answers lookups across them. Blocks and transactions are handled
as raw bytes and are never decoded. The package has no command-line program
and talks to no node over RPC; it is a library of the parts listed above.