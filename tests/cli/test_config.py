from __future__ import annotations

from pathlib import Path

import pytest

from nomad_client.config import (
    ClientConfig,
    config_path,
    load_client_config,
    save_client_config,
)


def _write_config(text: str) -> Path:
    path = config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text.strip() + "\n")
    return path


def test_defaults_without_file_or_env() -> None:
    config = load_client_config()
    assert config.addr == "http://127.0.0.1:4646"
    assert config.token is None
    assert config.verify_tls is True
    assert config.watch.poll_interval == 5.0


def test_file_values_and_watch_section() -> None:
    _write_config(
        """
addr = "http://file:4646"
jobs = "svc:worker"
verify_tls = false

[watch]
poll_interval = 2
claim_cooldown = 0
alloc_label = true
"""
    )
    config = load_client_config()
    assert config.addr == "http://file:4646"
    assert config.jobs == "svc:worker"
    assert config.verify_tls is False
    assert config.watch.poll_interval == 2.0
    assert config.watch.effective_cooldown == 0.0
    assert config.watch.alloc_label is True


def test_environment_overrides_file(monkeypatch: pytest.MonkeyPatch) -> None:
    _write_config('addr = "http://file:4646"\ntoken = "from-file"')
    monkeypatch.setenv("NOMAD_ADDR", "http://nomad-env:4646")
    monkeypatch.setenv("NOMAD_TOKEN", "nomad-token")
    monkeypatch.setenv("ALLOC_TAIL_TOKEN", "tail-token")
    monkeypatch.setenv("ALLOC_TAIL_VERIFY_TLS", "0")

    config = load_client_config()

    assert config.addr == "http://nomad-env:4646"
    assert config.token == "tail-token"
    assert config.verify_tls is False


def test_save_then_load() -> None:
    path = save_client_config(
        ClientConfig(addr="http://saved:4646", token="t", namespace="apps", jobs="a:b")
    )
    assert path == config_path()
    loaded = load_client_config()
    assert (loaded.addr, loaded.token, loaded.namespace, loaded.jobs) == (
        "http://saved:4646",
        "t",
        "apps",
        "a:b",
    )
