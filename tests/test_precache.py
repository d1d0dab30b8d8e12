import threading

import pytest

from chainindex.errors import IndexerError
from chainindex.history import compute_script_hash
from chainindex.precache import precache, scripthashes_from_file, to_scripthash

GENESIS_ADDRESS = "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"
GENESIS_SPK = "76a91462e907b15cbf27d5425399ebf6f0fb50ebb88f1888ac"


class RecordingChain:
    def __init__(self):
        self.calls = []
        self.lock = threading.Lock()

    def stats(self, scripthash):
        with self.lock:
            self.calls.append(scripthash)


def test_scripthash_passes_through():
    value = bytes(range(32))
    assert to_scripthash("scripthash", value.hex()) == value


def test_scripthash_wrong_length_raises():
    with pytest.raises(IndexerError):
        to_scripthash("scripthash", "abcd")


def test_scriptpubkey_is_hashed():
    spk = bytes.fromhex(GENESIS_SPK)
    assert to_scripthash("scriptpubkey", GENESIS_SPK) == compute_script_hash(spk)


def test_address_matches_its_output_script():
    assert to_scripthash("address", GENESIS_ADDRESS) == to_scripthash(
        "scriptpubkey", GENESIS_SPK
    )


def test_address_with_bad_checksum_raises():
    with pytest.raises(IndexerError):
        to_scripthash("address", GENESIS_ADDRESS[:-1] + "b")


def test_malformed_bech32_address_raises():
    with pytest.raises(IndexerError):
        to_scripthash("address", "bc1qinvalidaddress")


def test_invalid_hex_raises():
    with pytest.raises(IndexerError):
        to_scripthash("scriptpubkey", "zz")


def test_unknown_type_raises():
    with pytest.raises(IndexerError):
        to_scripthash("pubkey", "00")


def test_read_file(tmp_path):
    hashed = bytes(range(32, 64))
    path = tmp_path / "scripts.csv"
    path.write_text(
        f"scripthash,{hashed.hex()}\nscriptpubkey,{GENESIS_SPK},extra\n"
    )
    assert scripthashes_from_file(path) == [
        hashed,
        compute_script_hash(bytes.fromhex(GENESIS_SPK)),
    ]


def test_read_file_missing_column_raises(tmp_path):
    path = tmp_path / "scripts.csv"
    path.write_text("scripthash\n")
    with pytest.raises(IndexerError):
        scripthashes_from_file(path)


def test_read_missing_file_raises(tmp_path):
    with pytest.raises(IndexerError):
        scripthashes_from_file(tmp_path / "absent.csv")


def test_precache_visits_every_scripthash():
    chain = RecordingChain()
    hashes = [bytes([i]) * 32 for i in range(40)]
    precache(chain, hashes)
    assert sorted(chain.calls) == sorted(hashes)