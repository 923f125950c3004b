from __future__ import annotations

import random

import pytest

from autoreach.config import OriginConfig
from autoreach.errors import OriginRejected
from autoreach.policy.origin import OriginValidator, parse_origin


def test_exact_allow_list_entries_are_valid():
    validator = OriginValidator()
    for origin in ("http://localhost:3000", "http://localhost:3001", "http://127.0.0.1:3000"):
        check = validator.validate_origin(origin)
        assert check.valid, origin
        assert check.normalized_origin == origin


def test_normalization_of_case_and_trailing_slash():
    check = OriginValidator().validate_origin("HTTP://LocalHost:3000/")
    assert check.valid
    assert check.normalized_origin == "http://localhost:3000"


@pytest.mark.parametrize(
    "origin, reason",
    [
        (None, "missing origin"),
        ("", "missing origin"),
        ("not a url", "malformed origin"),
        ("http://localhost:3000/path", "malformed origin"),
        ("ftp://localhost:3000", "protocol not allowed: ftp"),
        ("http://localhost:8080", "port not allowed: 8080"),
        ("http://localhost:3002", "origin not in allow-list"),
        ("https://evil.example", "origin not in allow-list"),
    ],
)
def test_rejections(origin, reason):
    check = OriginValidator().validate_origin(origin)
    assert not check.valid
    assert check.reason == reason


def test_random_unlisted_origins_are_rejected():
    validator = OriginValidator()
    rng = random.Random(7)
    for _ in range(50):
        host = "".join(rng.choice("abcdefghij") for _ in range(8)) + ".test"
        port = rng.choice([3000, 3001, 3002, 3003, 3004, 3005])
        assert not validator.is_allowed(f"http://{host}:{port}")


def test_wildcards_only_apply_when_not_strict():
    cfg = OriginConfig(
        allowed_origins=["https://*.example.com"],
        allowed_ports=[443],
        strict_mode=True,
    )
    strict = OriginValidator(cfg)
    assert not strict.is_allowed("https://app.example.com")

    relaxed = OriginValidator(cfg.model_copy(update={"strict_mode": False}))
    assert relaxed.is_allowed("https://app.example.com")
    assert relaxed.is_allowed("https://a.b.example.com")
    # subdomains only, and the wildcard's scheme is binding
    assert not relaxed.is_allowed("https://evil-example.com")
    assert not relaxed.is_allowed("https://example.com")
    assert not relaxed.is_allowed("http://app.example.com")


def test_violations_are_logged_and_summarized(clock):
    validator = OriginValidator(clock=clock)
    validator.validate_origin("http://localhost:9999", user_agent="x" * 300)
    validator.validate_origin("http://localhost:9999")
    validator.validate_origin("https://evil.example")

    violations = validator.violations()
    assert len(violations) == 3
    assert len(violations[0].user_agent) == 100

    stats = validator.violation_stats()
    assert stats["total"] == 3
    assert stats["recent"] == 3
    assert stats["top_origins"][0] == {"origin": "http://localhost:9999", "count": 2}

    clock.advance(hours=2)
    assert validator.violation_stats()["recent"] == 0
    assert validator.clear_violations() == 3
    assert validator.violations() == []


def test_violation_log_is_bounded():
    validator = OriginValidator(OriginConfig(max_violations=5))
    for i in range(12):
        validator.validate_origin(f"http://bad{i}.test:3000")
    assert len(validator.violations()) == 5
    assert validator.violations()[-1].origin == "http://bad11.test:3000"


def test_violation_logging_can_be_disabled():
    validator = OriginValidator(OriginConfig(log_violations=False))
    assert not validator.is_allowed("http://bad.test:3000")
    assert validator.violations() == []


def test_require_raises_origin_rejected():
    validator = OriginValidator()
    assert validator.require("http://localhost:3000") == "http://localhost:3000"
    with pytest.raises(OriginRejected) as exc:
        validator.require("http://localhost:3333")
    assert exc.value.layer == "origin"
    assert exc.value.reason == "origin not in allow-list"


def test_update_config_takes_effect():
    validator = OriginValidator()
    assert not validator.is_allowed("http://localhost:3002")
    updated = validator.update_config(allowed_origins=["http://localhost:3002"])
    assert updated.allowed_origins == ["http://localhost:3002"]
    assert validator.is_allowed("http://localhost:3002")
    assert not validator.is_allowed("http://localhost:3000")


def test_parse_origin():
    assert parse_origin("https://Example.com") == ("https", "example.com", None)
    assert parse_origin("http://127.0.0.1:3000") == ("http", "127.0.0.1", 3000)
    with pytest.raises(ValueError):
        parse_origin("localhost:3000/x")
