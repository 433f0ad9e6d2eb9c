# File: tests/test_storage.py
import pytest

from wp_vrt.models import Phase
from wp_vrt.storage import capture_key, capture_prefix, diff_key, parse_capture_key


def test_capture_key_layout():
    assert capture_key(Phase.BASELINE, "20240501", "blog", "index") == "baseline/20240501/blog/index.png"
    assert capture_key("after", "20240501", "blog", "about/team") == "after/20240501/blog/about%2Fteam.png"
    assert capture_prefix(Phase.AFTER, "20240501", "blog") == "after/20240501/blog/"


def test_diff_key_layout():
    assert diff_key("20240501", "blog", 2.0, "index") == "diff/20240501/blog/2/index.png"
    assert diff_key("20240501", "blog", 0.5, "index") == "diff/20240501/blog/0.5/index.png"


def test_parse_capture_key_inverts_capture_key():
    key = capture_key(Phase.AFTER, "20240501", "blog", "shop/cart@mobile")
    assert parse_capture_key(key) == (Phase.AFTER, "20240501", "blog", "shop/cart@mobile")


@pytest.mark.parametrize("key", ["baseline/20240501/index.png", "diff/x/y/z.txt"])
def test_parse_capture_key_rejects_other_keys(key):
    with pytest.raises(ValueError):
        parse_capture_key(key)


def test_put_get_overwrite(store):
    key = capture_key(Phase.BASELINE, "20240501", "blog", "index")
    assert store.get(key) is None
    assert not store.exists(key)
    store.put(key, b"one")
    store.put(key, b"two")
    assert store.get(key) == b"two"
    assert store.exists(key)
    assert store.path_for(key).read_bytes() == b"two"


def test_list_by_prefix(store):
    store.put(capture_key(Phase.BASELINE, "20240501", "blog", "index"), b"a")
    store.put(capture_key(Phase.BASELINE, "20240501", "blog", "about"), b"b")
    store.put(capture_key(Phase.BASELINE, "20240501", "shop", "index"), b"c")
    store.put(capture_key(Phase.AFTER, "20240501", "blog", "index"), b"d")

    keys = store.list(capture_prefix(Phase.BASELINE, "20240501", "blog"))
    assert keys == ["baseline/20240501/blog/about.png", "baseline/20240501/blog/index.png"]
    assert store.list("missing/") == []


@pytest.mark.parametrize("key", ["/etc/passwd", "../outside.png", "baseline/../../x.png"])
def test_rejects_escaping_keys(store, key):
    with pytest.raises(ValueError):
        store.put(key, b"x")
