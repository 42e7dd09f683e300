from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path
from typing import Mapping, TypeAlias
import tomllib

DEFAULT_CONFIG_NAME = "prusti-bridge.toml"
REPORT_ERRORS_ONLY_ENV = "PRUSTI_BRIDGE_REPORT_ERRORS_ONLY"
PRUSTI_HOME_ENV = "PRUSTI_BRIDGE_PRUSTI_HOME"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]

_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError:
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def verification_defaults(
    root: Path | None = None, config_path: Path | None = None
) -> TomlTable:
    data = load_config(root=root, config_path=config_path)
    section = data.get("verification", {})
    return section if isinstance(section, dict) else {}


def env_text(name: str, *, default: str = "", environ: Mapping[str, str] | None = None) -> str:
    source = os.environ if environ is None else environ
    return source.get(name, default).strip()


def _as_bool(value: TomlValue) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY_VALUES
    return False


def _normalize_arg_list(value: TomlValue) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part for part in value.split() if part)
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value if item is not None)
    return ()


def _normalize_env_table(value: TomlValue) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    env: dict[str, str] = {}
    for key, item in value.items():
        if item is None:
            continue
        env[str(key)] = str(item).lower() if isinstance(item, bool) else str(item)
    return env


def _optional_text(value: TomlValue) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass(frozen=True)
class BridgeConfig:
    report_errors_only: bool = False
    extra_cargo_prusti_args: tuple[str, ...] = ()
    extra_prusti_rustc_args: tuple[str, ...] = ()
    extra_prusti_env: dict[str, str] = field(default_factory=dict)
    java_home: str | None = None
    prusti_home: str | None = None


def bridge_config_from_section(
    section: TomlTable, *, environ: Mapping[str, str] | None = None
) -> BridgeConfig:
    report_errors_only = _as_bool(section.get("report_errors_only"))
    override = env_text(REPORT_ERRORS_ONLY_ENV, environ=environ)
    if override:
        report_errors_only = _as_bool(override)
    prusti_home = env_text(PRUSTI_HOME_ENV, environ=environ) or _optional_text(
        section.get("prusti_home")
    )
    return BridgeConfig(
        report_errors_only=report_errors_only,
        extra_cargo_prusti_args=_normalize_arg_list(section.get("extra_cargo_prusti_args")),
        extra_prusti_rustc_args=_normalize_arg_list(section.get("extra_prusti_rustc_args")),
        extra_prusti_env=_normalize_env_table(section.get("extra_prusti_env")),
        java_home=_optional_text(section.get("java_home")),
        prusti_home=prusti_home,
    )


def load_bridge_config(
    root: Path | None = None,
    config_path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> BridgeConfig:
    section = verification_defaults(root=root, config_path=config_path)
    return bridge_config_from_section(section, environ=environ)


@dataclass(frozen=True)
class PrustiLocation:
    cargo_prusti: str
    prusti_rustc: str
    prusti_server: str


def _executable(name: str, home: str | None) -> str:
    if home is not None:
        return str(Path(home) / name)
    return shutil.which(name) or name


def prusti_location(config: BridgeConfig) -> PrustiLocation:
    return PrustiLocation(
        cargo_prusti=_executable("cargo-prusti", config.prusti_home),
        prusti_rustc=_executable("prusti-rustc", config.prusti_home),
        prusti_server=_executable("prusti-server", config.prusti_home),
    )


def verifier_env(
    config: BridgeConfig,
    *,
    server_address: str | None = None,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment of a verifier invocation.

    The inherited environment is kept because rustup needs it.
    """
    env = dict(os.environ if base is None else base)
    if server_address is not None:
        env["PRUSTI_SERVER_ADDRESS"] = server_address
    env["PRUSTI_QUIET"] = "true"
    if config.java_home is not None:
        env["JAVA_HOME"] = config.java_home
    env.update(config.extra_prusti_env)
    return env
