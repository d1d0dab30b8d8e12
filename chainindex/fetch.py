"""Background pipeline that reads blk*.dat files and splits them into raw blocks."""

from __future__ import annotations

import enum
import logging
import queue
import struct
import threading
from pathlib import Path
from typing import Callable, Generic, Iterable, Iterator, TypeVar

from .errors import IndexerError

logger = logging.getLogger(__name__)

T = TypeVar("T")

XOR_KEY_LEN = 8
_U32 = struct.Struct("<I")
_DONE = object()

# A raw serialized block together with its size as recorded in the blk file.
SizedBlock = tuple[bytes, int]


class FetchFrom(enum.Enum):
    """Where block data is fetched from."""

    BITCOIND = "bitcoind"
    BLKFILES = "blkfiles"


class Fetcher(Generic[T]):
    """Items produced by a background thread and handed over one at a time.

    At most one produced item waits to be consumed, so the producer never
    runs far ahead of the consumer. An exception raised by the producer is
    raised again to the consumer once the items produced before it are used.
    """

    def __init__(self, source: Iterable[T], name: str = "fetcher") -> None:
        self._queue: queue.Queue = queue.Queue(maxsize=1)
        self._error: BaseException | None = None
        self._consumed = False
        self._thread = threading.Thread(
            target=self._run, args=(source,), name=name, daemon=True
        )
        self._thread.start()

    def _run(self, source: Iterable[T]) -> None:
        try:
            for item in source:
                self._queue.put(item)
        except BaseException as exc:
            self._error = exc
        finally:
            self._queue.put(_DONE)

    def __iter__(self) -> Iterator[T]:
        if self._consumed:
            raise RuntimeError("fetcher was already consumed")
        self._consumed = True
        while True:
            item = self._queue.get()
            if item is _DONE:
                break
            yield item
        self._thread.join()
        if self._error is not None:
            raise self._error

    def map(self, func: Callable[[T], object]) -> None:
        """Call ``func`` on every item, then wait for the producer to finish."""
        for item in self:
            func(item)


def _check_xor_key(xor_key: bytes) -> bytes:
    key = bytes(xor_key)
    if len(key) != XOR_KEY_LEN:
        raise ValueError(f"xor key must be {XOR_KEY_LEN} bytes, got {len(key)}")
    return key


def blkfile_apply_xor_key(xor_key: bytes, blob: bytes) -> bytes:
    """XOR ``blob`` with the repeating 8-byte key, undoing the node's file obfuscation."""
    key = _check_xor_key(xor_key)
    size = len(blob)
    if size == 0:
        return b""
    mask = (key * (size // XOR_KEY_LEN + 1))[:size]
    value = int.from_bytes(blob, "little") ^ int.from_bytes(mask, "little")
    return value.to_bytes(size, "little")


def parse_blocks(blob: bytes, magic: int) -> list[SizedBlock]:
    """Split the contents of a blk file into ``(raw_block, size)`` pairs.

    Bytes that do not start with ``magic`` are skipped one at a time.
    Records holding only the magic and size, with no block body, are skipped.
    """
    data = bytes(blob)
    end_of_data = len(data)
    blocks: list[SizedBlock] = []
    pos = 0

    while pos < end_of_data:
        offset = pos
        if pos + 4 > end_of_data:
            break
        (value,) = _U32.unpack_from(data, pos)
        pos += 4
        if value != magic:
            pos = offset + 1
            continue

        if pos + 4 > end_of_data:
            raise IndexerError("no block size")
        (block_size,) = _U32.unpack_from(data, pos)
        pos += 4
        start = pos
        end = start + block_size

        # a record whose body was never written is followed directly by the next magic
        if pos + 4 > end_of_data:
            break
        (peek,) = _U32.unpack_from(data, pos)
        if peek == magic:
            pos = start
            continue

        if end > end_of_data:
            raise IndexerError(
                f"truncated block at offset {offset}: {block_size} bytes expected"
            )
        blocks.append((data[start:end], block_size))
        pos = end

    return blocks


def blkfiles_reader(
    blk_files: Iterable[str | Path], xor_key: bytes | None = None
) -> Fetcher[bytes]:
    """Read each blk file in turn, de-obfuscating it when ``xor_key`` is given."""
    paths = [Path(path) for path in blk_files]
    key = _check_xor_key(xor_key) if xor_key is not None else None

    def read() -> Iterator[bytes]:
        for path in paths:
            logger.debug("reading %s", path)
            try:
                blob = path.read_bytes()
            except OSError as exc:
                raise IndexerError(f"failed to read {path}: {exc}") from exc
            if key is not None:
                blob = blkfile_apply_xor_key(key, blob)
            yield blob

    return Fetcher(read(), "blkfiles_reader")


def blkfiles_parser(blobs: Fetcher[bytes], magic: int) -> Fetcher[list[SizedBlock]]:
    """Parse every blob coming from ``blobs`` into its blocks."""

    def parse() -> Iterator[list[SizedBlock]]:
        for blob in blobs:
            logger.debug("parsing %d bytes", len(blob))
            yield parse_blocks(blob, magic)

    return Fetcher(parse(), "blkfiles_parser")