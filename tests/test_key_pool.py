import random

from chatrelay.key_pool import mask_key, pick_random, split_keys


def test_split_keys_handles_commas_whitespace_and_newlines():
    raw = "sk-one, sk-two\nsk-three\r\n\n  sk-four,,"
    assert split_keys(raw) == ["sk-one", "sk-two", "sk-three", "sk-four"]


def test_split_keys_empty_input():
    assert split_keys("") == []
    assert split_keys(None) == []
    assert split_keys(" ,\n ") == []


def test_pick_random_returns_member():
    keys = ["sk-a", "sk-b", "sk-c"]
    rng = random.Random(7)
    picks = {pick_random(keys, rng) for _ in range(200)}
    assert picks <= set(keys)
    assert picks == set(keys)


def test_pick_random_single_key():
    assert pick_random(["sk-only"]) == "sk-only"


def test_pick_random_empty_returns_none():
    assert pick_random([]) is None
    assert pick_random(split_keys("")) is None


def test_mask_key_keeps_prefix_only():
    assert mask_key("sk-1234567890abcdef") == "sk-12345..."
    assert mask_key("short") == "short"
