"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

_ENV_VARS = (
    "ALLOC_TAIL_HOME",
    "ALLOC_TAIL_ADDR",
    "ALLOC_TAIL_TOKEN",
    "ALLOC_TAIL_VERIFY_TLS",
    "ALLOC_TAIL_JOBS",
    "ALLOC_TAIL_NAMESPACE",
    "ALLOC_TAIL_REGION",
    "NOMAD_ADDR",
    "NOMAD_TOKEN",
    "NOMAD_NAMESPACE",
    "NOMAD_REGION",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ALLOC_TAIL_HOME", str(tmp_path_factory.mktemp("alloc-tail-home")))
