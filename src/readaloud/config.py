"""
Layered configuration for the reader.

Values are resolved from built-in defaults, then ``readaloud.toml``, then
``READALOUD_*`` environment variables, then command-line flags. Later layers win.
"""

from __future__ import annotations

import argparse
import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, NamedTuple

from .provider_base import Backend

DEFAULT_CONFIG_FILENAME = "readaloud.toml"
ENV_PREFIX = "READALOUD_"
MIN_SPEED = 0.5
MAX_SPEED = 3.0


@dataclass
class AppConfig:
    """Settings for one reader run."""

    server_url: str = "http://127.0.0.1:9090"
    api_token: str | None = None
    backend: str = Backend.KOKORO.value
    voice: str | None = None
    speed: float = 1.0
    keep_behind: int = 2
    prefetch_ahead: int = 2
    max_consecutive_failures: int = 3
    long_page_threshold: int = 20
    timeout_ms: int = 30_000
    sample_rate: int = 24_000
    state_dir: str | None = None
    device: str | None = None
    simulate: bool = False
    log_format: str = "human"
    json_log: bool = False
    dry_run: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


def _flag(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class Setting(NamedTuple):
    name: str
    cast: Callable[[Any], Any]
    env: str | None = None
    flags: tuple[str, ...] = ()


# env defaults to READALOUD_<NAME>; flags defaults to the field name.
SETTINGS: tuple[Setting, ...] = (
    Setting("server_url", str, flags=("server", "server_url")),
    Setting("api_token", str),
    Setting("backend", str),
    Setting("voice", str),
    Setting("speed", float),
    Setting("keep_behind", int),
    Setting("prefetch_ahead", int),
    Setting("max_consecutive_failures", int),
    Setting("long_page_threshold", int),
    Setting("timeout_ms", int, flags=("timeout", "timeout_ms")),
    Setting("sample_rate", int),
    Setting("state_dir", str, env="READALOUD_HOME"),
    Setting("device", str),
    Setting("simulate", _flag),
    Setting("log_format", str),
    Setting("json_log", _flag),
    Setting("dry_run", _flag),
)
_BY_NAME = {setting.name: setting for setting in SETTINGS}
_SWITCHES = {"simulate", "json_log", "dry_run"}


def load_config(
    args: argparse.Namespace | None = None,
    *,
    env: Mapping[str, str] | None = None,
    config_file: str | Path | None = None,
) -> AppConfig:
    """Build an :class:`AppConfig`; raises ``ValueError`` on invalid values."""

    merged = asdict(AppConfig())
    extra: dict[str, Any] = merged.pop("extra")

    path = _config_path(args, config_file)
    if path is not None:
        known, unknown = _read_toml(path)
        merged.update(known)
        extra.update(unknown)

    merged.update(_env_layer(os.environ if env is None else env))
    if args is not None:
        merged.update(_cli_layer(args))

    if _flag(merged["json_log"]):
        merged["log_format"] = "json"

    return AppConfig(**_checked(merged), extra=extra)


def _config_path(args: argparse.Namespace | None, config_file: str | Path | None) -> Path | None:
    explicit = getattr(args, "config", None) if args is not None else None
    candidate = Path(explicit or config_file or DEFAULT_CONFIG_FILENAME).expanduser()
    return candidate if candidate.is_file() else None


def _read_toml(path: Path) -> tuple[dict[str, Any], dict[str, Any]]:
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    known = {key: _BY_NAME[key].cast(value) for key, value in data.items() if key in _BY_NAME}
    unknown = {key: value for key, value in data.items() if key not in _BY_NAME}
    return known, unknown


def _env_layer(source: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for setting in SETTINGS:
        raw = source.get(setting.env or ENV_PREFIX + setting.name.upper(), "")
        if raw != "":
            layer[setting.name] = setting.cast(raw)
    return layer


def _cli_layer(args: argparse.Namespace) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for setting in SETTINGS:
        for attr in setting.flags or (setting.name,):
            value = getattr(args, attr, None)
            if value is None:
                continue
            # an unset store_true flag must not mask the environment or file
            if setting.name in _SWITCHES and not value:
                continue
            layer[setting.name] = setting.cast(value)
    return layer


def _require(data: Mapping[str, Any], names: Iterable[str], test: Callable[[int], bool], rule: str) -> None:
    for name in names:
        if data.get(name) is not None and not test(int(data[name])):
            raise ValueError(f"{name} must be {rule}")


def _checked(data: dict[str, Any]) -> dict[str, Any]:
    try:
        data["backend"] = Backend(str(data["backend"])).value
    except ValueError as exc:
        choices = ", ".join(b.value for b in Backend)
        raise ValueError(f"backend must be one of: {choices}") from exc

    if not MIN_SPEED <= float(data["speed"]) <= MAX_SPEED:
        raise ValueError(f"speed must be between {MIN_SPEED} and {MAX_SPEED}")

    _require(data, ("keep_behind", "prefetch_ahead"), lambda n: n >= 0, "non-negative")
    _require(
        data,
        ("max_consecutive_failures", "long_page_threshold", "timeout_ms", "sample_rate"),
        lambda n: n > 0,
        "positive",
    )
    return data
