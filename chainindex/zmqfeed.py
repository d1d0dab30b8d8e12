"""Block notifications from a node's ZMQ publisher."""

from __future__ import annotations

import logging
import threading
from typing import Callable

import zmq

from .errors import IndexerError

logger = logging.getLogger(__name__)

HASHBLOCK_TOPIC = b"hashblock"
RAWTX_TOPIC = b"rawtx"
_BLOCK_HASH_LEN = 32


def parse_notification(topic: bytes, data: bytes) -> bytes | None:
    """Return the block hash carried by a ``hashblock`` message, or None.

    The hash is published in display order and is returned reversed, in
    internal byte order.
    """
    if bytes(topic) == HASHBLOCK_TOPIC and len(data) == _BLOCK_HASH_LEN:
        return bytes(data)[::-1]
    return None


def start(url: str, block_hash_notify: Callable[[bytes], object]) -> threading.Thread:
    """Subscribe to block hashes at ``url`` and pass each to ``block_hash_notify``."""
    logger.debug("Starting ZMQ thread")
    context = zmq.Context.instance()
    try:
        subscriber = context.socket(zmq.SUB)
    except zmq.ZMQError as exc:
        raise IndexerError("failed creating subscriber") from exc
    try:
        subscriber.connect(url)
        subscriber.setsockopt(zmq.SUBSCRIBE, HASHBLOCK_TOPIC)
    except zmq.ZMQError as exc:
        subscriber.close(linger=0)
        raise IndexerError(f"failed connecting subscriber to {url}") from exc

    def run() -> None:
        while True:
            try:
                frames = subscriber.recv_multipart()
            except zmq.ContextTerminated:
                return
            except zmq.ZMQError as exc:
                logger.warning("recv_multipart error: %r", exc)
                continue
            if len(frames) < 2:
                continue
            block_hash = parse_notification(frames[0], frames[1])
            if block_hash is None:
                continue
            logger.debug("New block from ZMQ: %s", block_hash[::-1].hex())
            try:
                block_hash_notify(block_hash)
            except Exception as exc:
                logger.debug("block notification dropped: %r", exc)

    thread = threading.Thread(target=run, name="zmq", daemon=True)
    thread.start()
    return thread