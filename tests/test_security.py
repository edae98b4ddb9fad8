"""
Tests for origin normalisation, origin gating and payload sanitisation
"""
import pytest

from parley.security import DefaultSecurityGate, normalize_origin, sanitize_value


@pytest.mark.parametrize("raw, expected", [
    ("https://Example.COM", "https://example.com"),
    ("https://example.com:443/path?q=1", "https://example.com"),
    ("http://example.com:8080", "http://example.com:8080"),
    ("null", "null"),
    ("*", "*"),
    ("not an origin", None),
    ("https://example.com:99999", None),
    (42, None),
])
def test_normalize_origin(raw, expected):
    assert normalize_origin(raw) == expected


def test_gate_matches_normalized_origins():
    gate = DefaultSecurityGate(["https://host.example"])
    assert gate.is_origin_allowed("https://HOST.example:443")
    assert not gate.is_origin_allowed("https://host.example:8443")
    assert not gate.is_origin_allowed("https://evil.example")
    assert not gate.is_origin_allowed("null")


def test_empty_allow_list_rejects_everything():
    gate = DefaultSecurityGate()
    assert not gate.is_origin_allowed("https://host.example")
    assert gate.allowed_origins == []


def test_wildcard_allows_everything():
    gate = DefaultSecurityGate(["*"])
    assert gate.is_origin_allowed("https://anything.example")


def test_allow_and_revoke():
    gate = DefaultSecurityGate()
    gate.allow("https://late.example")
    assert gate.is_origin_allowed("https://late.example")
    gate.revoke("https://LATE.example")
    assert not gate.is_origin_allowed("https://late.example")
    with pytest.raises(ValueError):
        gate.allow("garbage")


def test_sanitize_drops_dangerous_and_unportable_values():
    payload = {
        "ok": [1, 2.5, "three", True, None],
        "__proto__": {"polluted": True},
        "nested": {"constructor": 1, "prototype": 2, "keep": (1, 2)},
        "inf": float("inf"),
        "fn": print,
        "set": {1, 2},
        3: "int key",
    }
    assert sanitize_value(payload) == {
        "ok": [1, 2.5, "three", True, None],
        "nested": {"keep": [1, 2]},
        "inf": None,
        "3": "int key",
    }


def test_sanitize_returns_a_copy():
    original = {"list": [1, {"a": 1}]}
    clean = sanitize_value(original)
    clean["list"][1]["a"] = 2
    assert original["list"][1]["a"] == 1


def test_sanitize_stops_at_depth():
    deep = current = {}
    for _ in range(60):
        current["next"] = {}
        current = current["next"]
    clean = sanitize_value(deep)
    depth = 0
    while isinstance(clean, dict) and "next" in clean:
        clean = clean["next"]
        depth += 1
    assert depth <= 51
