import json
import os
import time

import pytest

from chainindex.errors import IndexerError
from chainindex.registry import (
    AssetMeta,
    AssetRegistry,
    AssetSortDir,
    AssetSortField,
    AssetSorting,
)

ID_A = "aa" * 32
ID_B = "bb" * 32
ID_C = "cc" * 32


def write_asset(root, asset_id, doc):
    folder = root / asset_id[:2]
    folder.mkdir(exist_ok=True)
    path = folder / f"{asset_id}.json"
    path.write_text(json.dumps(doc))
    return path


def doc(name, ticker=None, domain=None, precision=8):
    entity = {"domain": domain} if domain is not None else None
    result = {"contract": None, "entity": entity, "precision": precision, "name": name}
    if ticker is not None:
        result["ticker"] = ticker
    return result


@pytest.fixture
def registry(tmp_path):
    write_asset(tmp_path, ID_A, doc("Zeta", ticker="ZT", domain="zeta.example.com"))
    write_asset(tmp_path, ID_B, doc("alpha", ticker="al", domain="alpha.example.com"))
    write_asset(tmp_path, ID_C, doc("Mid"))
    reg = AssetRegistry(tmp_path)
    reg.fs_sync()
    return reg


def ids(entries):
    return [asset_id for asset_id, _ in entries]


def test_get_loaded_asset(registry):
    meta = registry.get(ID_B)
    assert meta.name == "alpha"
    assert meta.ticker == "al"
    assert registry.get("dd" * 32) is None


def test_list_by_name(registry):
    total, entries = registry.list(0, 10, AssetSorting(AssetSortField.NAME))
    assert total == 3
    assert ids(entries) == [ID_B, ID_C, ID_A]


def test_list_by_name_descending_and_paged(registry):
    sorting = AssetSorting(AssetSortField.NAME, AssetSortDir.DESCENDING)
    total, entries = registry.list(1, 1, sorting)
    assert total == 3
    assert ids(entries) == [ID_C]


def test_list_by_ticker_puts_missing_first(registry):
    _, entries = registry.list(0, 10, AssetSorting())
    assert ids(entries) == [ID_C, ID_B, ID_A]


def test_list_by_domain(registry):
    sorting = AssetSorting(AssetSortField.DOMAIN, AssetSortDir.DESCENDING)
    _, entries = registry.list(0, 10, sorting)
    assert ids(entries) == [ID_A, ID_B, ID_C]


def test_skips_other_files_and_dirs(tmp_path):
    (tmp_path / f"{ID_A}.json").write_text(json.dumps(doc("root")))
    (tmp_path / "abc").mkdir()
    (tmp_path / "abc" / f"{ID_A}.json").write_text(json.dumps(doc("deep")))
    (tmp_path / "bb").mkdir()
    (tmp_path / "bb" / "notes.txt").write_text("not json")
    reg = AssetRegistry(tmp_path)
    reg.fs_sync()
    assert reg.list(0, 10, AssetSorting()) == (0, [])


def test_invalid_filename_raises(tmp_path):
    (tmp_path / "zz").mkdir()
    (tmp_path / "zz" / "nothex.json").write_text(json.dumps(doc("x")))
    with pytest.raises(IndexerError):
        AssetRegistry(tmp_path).fs_sync()


def test_invalid_json_raises(tmp_path):
    path = write_asset(tmp_path, ID_A, doc("x"))
    path.write_text("{not json")
    with pytest.raises(IndexerError):
        AssetRegistry(tmp_path).fs_sync()


def test_missing_field_raises(tmp_path):
    write_asset(tmp_path, ID_A, {"name": "x", "precision": 2})
    with pytest.raises(IndexerError):
        AssetRegistry(tmp_path).fs_sync()


def test_missing_directory_raises(tmp_path):
    with pytest.raises(IndexerError):
        AssetRegistry(tmp_path / "absent").fs_sync()


def test_unchanged_mtime_keeps_cached_entry(tmp_path):
    path = write_asset(tmp_path, ID_A, doc("first"))
    reg = AssetRegistry(tmp_path)
    reg.fs_sync()
    stat = path.stat()
    path.write_text(json.dumps(doc("second")))
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns))
    reg.fs_sync()
    assert reg.get(ID_A).name == "first"
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
    reg.fs_sync()
    assert reg.get(ID_A).name == "second"


def test_query_params_defaults():
    assert AssetSorting.from_query_params({}) == AssetSorting(
        AssetSortField.TICKER, AssetSortDir.ASCENDING
    )


def test_query_params_parsed():
    sorting = AssetSorting.from_query_params({"sort_field": "domain", "sort_dir": "desc"})
    assert sorting == AssetSorting(AssetSortField.DOMAIN, AssetSortDir.DESCENDING)


@pytest.mark.parametrize(
    "query", [{"sort_field": "size"}, {"sort_dir": "up"}]
)
def test_query_params_invalid(query):
    with pytest.raises(IndexerError):
        AssetSorting.from_query_params(query)


def test_to_dict_skips_empty_fields():
    meta = AssetMeta(None, None, 8, "coin")
    assert meta.to_dict() == {"precision": 8, "name": "coin"}


def test_to_dict_keeps_present_fields():
    meta = AssetMeta({"version": 0}, {"domain": "example.com"}, 2, "coin", "CN")
    assert meta.to_dict() == {
        "contract": {"version": 0},
        "entity": {"domain": "example.com"},
        "precision": 2,
        "name": "coin",
        "ticker": "CN",
    }


def test_spawn_sync_picks_up_new_files(tmp_path):
    reg = AssetRegistry(tmp_path)
    thread = reg.spawn_sync(0.05)
    try:
        write_asset(tmp_path, ID_A, doc("late"))
        deadline = time.monotonic() + 5
        while reg.get(ID_A) is None and time.monotonic() < deadline:
            time.sleep(0.02)
        assert reg.get(ID_A).name == "late"
    finally:
        thread.stop()
    assert not thread.is_alive()