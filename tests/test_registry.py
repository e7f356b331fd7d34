import json

import pytest

import filebot


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "file_cache.json"


@pytest.fixture
def registry(cache_path):
    return filebot.FileRegistry(filebot.RegistryStore(cache_path))


def test_load_missing_file_is_empty(cache_path):
    assert filebot.RegistryStore(cache_path).load() == {}


def test_load_malformed_file_is_empty(cache_path):
    cache_path.write_text("{not json", encoding="utf-8")
    assert filebot.RegistryStore(cache_path).load() == {}


def test_load_wrong_shape_is_empty(cache_path):
    cache_path.write_text(json.dumps({"a.txt": 5}), encoding="utf-8")
    assert filebot.RegistryStore(cache_path).load() == {}
    cache_path.write_text(json.dumps(["a.txt"]), encoding="utf-8")
    assert filebot.RegistryStore(cache_path).load() == {}


def test_save_then_load(cache_path):
    mapping = {"report.pdf": "AAA", "фото.jpg": "BBB"}
    assert filebot.RegistryStore(cache_path).save(mapping) is True
    assert filebot.RegistryStore(cache_path).load() == mapping


def test_save_failure_is_reported(tmp_path):
    store = filebot.RegistryStore(tmp_path / "missing-dir" / "cache.json")
    assert store.save({"a.txt": "A"}) is False


def test_put_get_and_find_by_stem(registry, cache_path):
    registry.put("report.pdf", "REF1")
    assert registry.get("report.pdf") == "REF1"
    assert registry.find_by_stem("report") == ("REF1", "report.pdf")
    assert json.loads(cache_path.read_text(encoding="utf-8")) == {"report.pdf": "REF1"}


def test_put_overwrites(registry):
    registry.put("a.txt", "OLD")
    registry.put("a.txt", "NEW")
    assert len(registry) == 1
    assert registry.get("a.txt") == "NEW"


def test_find_by_stem_prefers_first_inserted(registry):
    registry.put("notes.txt", "FIRST")
    registry.put("notes.md", "SECOND")
    assert registry.find_by_stem("notes") == ("FIRST", "notes.txt")
    assert registry.find_by_stem("missing") is None


def test_remove(registry, cache_path):
    registry.put("a.txt", "A")
    assert registry.remove("a.txt") is True
    assert registry.get("a.txt") is None
    assert "a.txt" not in registry
    assert json.loads(cache_path.read_text(encoding="utf-8")) == {}


def test_remove_missing_does_not_save(registry, cache_path):
    assert registry.remove("missing.txt") is False
    assert registry.is_empty()
    assert not cache_path.exists()


def test_registry_reloads_from_store(cache_path):
    first = filebot.FileRegistry(filebot.RegistryStore(cache_path))
    first.put("b.txt", "B")
    first.put("a.txt", "A")
    second = filebot.FileRegistry(filebot.RegistryStore(cache_path))
    assert second.names() == ["b.txt", "a.txt"]


def test_put_keeps_memory_when_save_fails(tmp_path):
    registry = filebot.FileRegistry(filebot.RegistryStore(tmp_path / "missing-dir" / "cache.json"))
    registry.put("a.txt", "A")
    assert registry.get("a.txt") == "A"
    assert registry.find_by_stem("a") == ("A", "a.txt")
    assert registry.remove("a.txt") is True
    assert registry.is_empty()
