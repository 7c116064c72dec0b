"""Configuration helpers shared across CLI and SDK surfaces."""

from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from alloc_tail.watch.supervisor import WatchSettings

_CONFIG_FILENAME = "config.toml"
_DEFAULT_ADDR = "http://127.0.0.1:4646"
ENV_PREFIX = "ALLOC_TAIL_"
_ENV_HOME = f"{ENV_PREFIX}HOME"
_ENV_ADDR = f"{ENV_PREFIX}ADDR"
_ENV_TOKEN = f"{ENV_PREFIX}TOKEN"
_ENV_VERIFY = f"{ENV_PREFIX}VERIFY_TLS"
_ENV_JOBS = f"{ENV_PREFIX}JOBS"
_ENV_NAMESPACE = f"{ENV_PREFIX}NAMESPACE"
_ENV_REGION = f"{ENV_PREFIX}REGION"
_NOMAD_ADDR = "NOMAD_ADDR"
_NOMAD_TOKEN = "NOMAD_TOKEN"
_NOMAD_NAMESPACE = "NOMAD_NAMESPACE"
_NOMAD_REGION = "NOMAD_REGION"


@dataclass(slots=True)
class ClientConfig:
    """Represents persisted CLI settings."""

    addr: str = _DEFAULT_ADDR
    token: str | None = None
    verify_tls: bool = True
    namespace: str | None = None
    region: str | None = None
    jobs: str | None = None
    watch: WatchSettings = field(default_factory=WatchSettings)

    def merged(
        self,
        *,
        addr: str | None = None,
        token: str | None = None,
        verify_tls: bool | None = None,
        namespace: str | None = None,
        region: str | None = None,
        jobs: str | None = None,
    ) -> ClientConfig:
        """Return a copy that applies CLI/env overrides."""

        return replace(
            self,
            addr=addr or self.addr,
            token=token or self.token,
            verify_tls=self.verify_tls if verify_tls is None else verify_tls,
            namespace=namespace or self.namespace,
            region=region or self.region,
            jobs=jobs or self.jobs,
        )


def _config_dir(create: bool = False) -> Path:
    custom = os.environ.get(_ENV_HOME)
    base = Path(custom) if custom else Path.home() / ".alloc-tail"
    if create:
        base.mkdir(parents=True, exist_ok=True)
    return base


def config_path() -> Path:
    """Return the path to the persisted CLI configuration."""

    return _config_dir(create=False) / _CONFIG_FILENAME


def _env(*names: str) -> str | None:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


def load_client_config() -> ClientConfig:
    """Load configuration from disk + environment overrides.

    ``ALLOC_TAIL_*`` variables win over Nomad's own ``NOMAD_*`` variables.
    """

    data: dict[str, Any] = {}
    path = config_path()
    if path.exists():
        data = tomllib.loads(path.read_text())

    watch_data = data.get("watch", {})
    config = ClientConfig(
        addr=str(data.get("addr", _DEFAULT_ADDR)),
        token=data.get("token") or None,
        verify_tls=bool(data.get("verify_tls", True)),
        namespace=data.get("namespace") or None,
        region=data.get("region") or None,
        jobs=data.get("jobs") or None,
        watch=WatchSettings.from_mapping(watch_data if isinstance(watch_data, dict) else {}),
    )

    env_verify = os.environ.get(_ENV_VERIFY)
    verify_tls: bool | None = None
    if env_verify is not None:
        verify_tls = env_verify not in {"0", "false", "False"}

    return config.merged(
        addr=_env(_ENV_ADDR, _NOMAD_ADDR),
        token=_env(_ENV_TOKEN, _NOMAD_TOKEN),
        verify_tls=verify_tls,
        namespace=_env(_ENV_NAMESPACE, _NOMAD_NAMESPACE),
        region=_env(_ENV_REGION, _NOMAD_REGION),
        jobs=_env(_ENV_JOBS),
    )


def save_client_config(config: ClientConfig) -> Path:
    """Persist connection settings to ~/.alloc-tail/config.toml."""

    base = _config_dir(create=True)
    path = base / _CONFIG_FILENAME
    lines = [
        f"addr = {json.dumps(config.addr)}",
        f"token = {json.dumps(config.token or '')}",
        f"verify_tls = {'true' if config.verify_tls else 'false'}",
    ]
    if config.namespace:
        lines.append(f"namespace = {json.dumps(config.namespace)}")
    if config.region:
        lines.append(f"region = {json.dumps(config.region)}")
    if config.jobs:
        lines.append(f"jobs = {json.dumps(config.jobs)}")
    lines.append("")
    path.write_text("\n".join(lines), encoding="utf-8")
    return path
