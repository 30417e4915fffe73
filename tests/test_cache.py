"""Test the bounded LRU cache."""

import random

import pytest

from xposed.utils.cache import BoundedCache


def test_evicts_least_recently_used():
    cache = BoundedCache(2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    assert "a" not in cache
    assert list(cache.keys()) == ["b", "c"]


def test_get_promotes_key():
    cache = BoundedCache(2)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1

    cache.set("c", 3)
    assert cache.has("a")
    assert not cache.has("b")


def test_has_does_not_promote():
    cache = BoundedCache(2)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.has("a")

    cache.set("c", 3)
    assert not cache.has("a")


def test_updating_existing_key_never_evicts():
    cache = BoundedCache(2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 10)

    assert len(cache) == 2
    assert cache.get("a") == 10
    assert list(cache.keys()) == ["b", "a"]


def test_none_is_a_stored_value():
    cache = BoundedCache(4)
    cache.set("ghost", None)

    assert cache.has("ghost")
    assert cache.get("ghost", "missing") is None
    assert cache.get("other", "missing") == "missing"


def test_delete_and_clear():
    cache = BoundedCache(4)
    cache.set("a", 1)
    assert cache.delete("a") is True
    assert cache.delete("a") is False

    cache.set("b", 2)
    cache.clear()
    assert len(cache) == 0


def test_load_keeps_order_and_capacity():
    cache = BoundedCache(2)
    cache.load({"a": 1, "b": 2, "c": 3})
    assert cache.to_dict() == {"b": 2, "c": 3}


def test_rejects_zero_capacity():
    with pytest.raises(ValueError):
        BoundedCache(0)


def test_keeps_most_recently_touched_keys():
    rng = random.Random(7)
    cache = BoundedCache(5)
    touched = []

    for _ in range(500):
        key = rng.randrange(12)
        if rng.random() < 0.5:
            cache.set(key, key)
            if key in touched:
                touched.remove(key)
            touched.append(key)
        elif cache.get(key) is not None:
            touched.remove(key)
            touched.append(key)
        touched = touched[-5:]

    assert list(cache.keys()) == touched
