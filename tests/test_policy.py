from pathlib import Path

import pytest

from crate_apply.policy import HarnessPolicy, default_workers


def test_bundled_defaults() -> None:
    policy = HarnessPolicy()
    assert policy.timeout_seconds == 900
    assert policy.memory_limit_mb == 4096
    assert policy.cpu_limit_seconds == 0
    assert policy.breaker_threshold == 10
    assert policy.workers == default_workers()
    assert 1 <= policy.workers <= 4
    assert policy.release is False
    assert policy.network is True
    assert policy.max_output_bytes == 512 * 1024
    assert policy.max_excerpt_bytes == 16 * 1024


def test_zero_workers_means_default() -> None:
    assert HarnessPolicy(workers=0).workers == default_workers()


@pytest.mark.parametrize(
    "overrides",
    [
        {"timeout_seconds": 0},
        {"workers": -1},
        {"memory_limit_mb": -5},
        {"breaker_threshold": -1},
        {"max_output_kb": 0},
        {"requests_per_second": -1.0},
    ],
)
def test_invalid_values_raise(overrides: dict) -> None:
    with pytest.raises(ValueError):
        HarnessPolicy(**overrides)


def test_policy_file_table(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text(
        "[policy]\n"
        "timeout_seconds = 60\n"
        "workers = 8\n"
        "release = true\n"
        "network = false\n",
        encoding="utf-8",
    )
    policy = HarnessPolicy.from_file(str(policy_file))
    assert policy.timeout_seconds == 60
    assert policy.workers == 8
    assert policy.release is True
    assert policy.network is False
    assert policy.breaker_threshold == 10


def test_policy_file_top_level_keys(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("breaker_threshold = 0\n", encoding="utf-8")
    assert HarnessPolicy.from_file(str(policy_file)).breaker_threshold == 0


def test_policy_file_rejects_unknown_keys(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("[policy]\ntimeout = 5\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Unknown policy keys: timeout"):
        HarnessPolicy.from_file(str(policy_file))


def test_missing_policy_file(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="not found"):
        HarnessPolicy.from_file(str(tmp_path / "absent.toml"))


def test_overrides_skip_none_and_coerce() -> None:
    policy = HarnessPolicy(workers=2).with_overrides(
        workers=None,
        timeout_seconds="30",
        release="yes",
        requests_per_second="2.5",
    )
    assert policy.workers == 2
    assert policy.timeout_seconds == 30
    assert policy.release is True
    assert policy.requests_per_second == 2.5


def test_overrides_reject_bad_values() -> None:
    with pytest.raises(ValueError, match="'workers' must be of type int"):
        HarnessPolicy().with_overrides(workers="many")
    with pytest.raises(ValueError, match="Unknown policy key"):
        HarnessPolicy().with_overrides(colour="blue")
