"""Tests for configuration loading and bounded polling."""

import pytest

from kina.config import KinaConfig, PollPolicy
from kina.exceptions import ConfigurationError
from kina.polling import RetryError, poll_until, retrying


def test_missing_file_gives_defaults(tmp_path):
    config = KinaConfig.load(tmp_path / "absent.yaml")

    assert config.multi_node_networking is False
    assert config.approve_csrs is True
    assert config.lock_dir == config.state_dir / "locks"


def test_env_var_selects_file(tmp_path, monkeypatch):
    path = tmp_path / "kina.yaml"
    path.write_text("multi_node_networking: true\nlock_timeout: 5\n")
    monkeypatch.setenv("KINA_CONFIG", str(path))

    config = KinaConfig.load()

    assert config.multi_node_networking is True
    assert config.lock_timeout == 5


def test_save_and_load(tmp_path):
    path = tmp_path / "nested" / "config.yaml"
    original = KinaConfig(kubeconfig_dir=tmp_path / "kube", csr=PollPolicy(timeout=30))

    original.save(path)
    loaded = KinaConfig.load(path)

    assert loaded.kubeconfig_dir == tmp_path / "kube"
    assert loaded.csr.timeout == 30


def test_user_paths_are_expanded():
    config = KinaConfig(kubeconfig_dir="~/kube-test")

    assert "~" not in str(config.kubeconfig_dir)


def test_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("boot: [unclosed\n")

    with pytest.raises(ConfigurationError, match="Failed to read"):
        KinaConfig.load(path)


def test_invalid_values(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("exec_timeout: -1\n")

    with pytest.raises(ConfigurationError) as exc_info:
        KinaConfig.load(path)

    assert "exec_timeout" in exc_info.value.details


def test_top_level_must_be_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")

    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        KinaConfig.load(path)


def test_poll_until_returns_first_truthy_value():
    values = iter([None, "", "ready"])

    assert poll_until(lambda: next(values), PollPolicy(initial_wait=0, max_wait=0, attempts=5)) == "ready"


def test_poll_until_gives_up():
    calls = []

    with pytest.raises(RetryError):
        poll_until(lambda: calls.append(1), PollPolicy(initial_wait=0, max_wait=0, attempts=3))

    assert len(calls) == 3


def test_poll_until_retries_listed_exceptions_only():
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 2:
            raise ConnectionError("refused")
        return True

    policy = PollPolicy(initial_wait=0, max_wait=0, attempts=5)
    assert poll_until(flaky, policy, retry_on=(ConnectionError,))

    with pytest.raises(KeyError):
        poll_until(lambda: {}["missing"], policy, retry_on=(ConnectionError,))


def test_retrying_reraises_last_error():
    attempts = []

    with pytest.raises(ValueError, match="attempt 3"):
        for attempt in retrying(PollPolicy(initial_wait=0, max_wait=0, attempts=3), retry_on=(ValueError,)):
            with attempt:
                attempts.append(1)
                raise ValueError(f"attempt {len(attempts)}")
