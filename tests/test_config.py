from __future__ import annotations

from pathlib import Path

from prusti_bridge import config


def test_missing_or_invalid_config_yields_defaults(tmp_path: Path) -> None:
    assert config.load_bridge_config(root=tmp_path, environ={}) == config.BridgeConfig()
    (tmp_path / config.DEFAULT_CONFIG_NAME).write_text("[verification\n", encoding="utf-8")
    assert config.load_bridge_config(root=tmp_path, environ={}) == config.BridgeConfig()


def test_verification_section_is_read(tmp_path: Path, write_config) -> None:
    write_config(
        tmp_path,
        {
            "report_errors_only": True,
            "extra_cargo_prusti_args": ["--features", "demo"],
            "extra_prusti_rustc_args": "--edition=2021  -Zflag",
            "java_home": " /opt/java ",
            "prusti_home": "/opt/prusti",
        },
    )
    loaded = config.load_bridge_config(root=tmp_path, environ={})
    assert loaded.report_errors_only is True
    assert loaded.extra_cargo_prusti_args == ("--features", "demo")
    assert loaded.extra_prusti_rustc_args == ("--edition=2021", "-Zflag")
    assert loaded.java_home == "/opt/java"
    assert loaded.prusti_home == "/opt/prusti"


def test_env_table_is_read(tmp_path: Path) -> None:
    path = tmp_path / "custom.toml"
    path.write_text(
        "[verification.extra_prusti_env]\nPRUSTI_LOG = \"debug\"\nPRUSTI_CHECK_OVERFLOWS = true\n",
        encoding="utf-8",
    )
    loaded = config.load_bridge_config(config_path=path, environ={})
    assert loaded.extra_prusti_env == {"PRUSTI_LOG": "debug", "PRUSTI_CHECK_OVERFLOWS": "true"}


def test_environment_overrides_the_file(tmp_path: Path, write_config) -> None:
    write_config(tmp_path, {"report_errors_only": True, "prusti_home": "/from/file"})
    loaded = config.load_bridge_config(
        root=tmp_path,
        environ={
            config.REPORT_ERRORS_ONLY_ENV: "no",
            config.PRUSTI_HOME_ENV: "/from/env",
        },
    )
    assert loaded.report_errors_only is False
    assert loaded.prusti_home == "/from/env"


def test_prusti_location_uses_home() -> None:
    location = config.prusti_location(config.BridgeConfig(prusti_home="/opt/prusti"))
    assert location == config.PrustiLocation(
        cargo_prusti=str(Path("/opt/prusti/cargo-prusti")),
        prusti_rustc=str(Path("/opt/prusti/prusti-rustc")),
        prusti_server=str(Path("/opt/prusti/prusti-server")),
    )


def test_verifier_env_layers_settings_over_base() -> None:
    bridge_config = config.BridgeConfig(
        java_home="/opt/java", extra_prusti_env={"PRUSTI_QUIET": "false", "X": "1"}
    )
    env = config.verifier_env(
        bridge_config, server_address="localhost:1", base={"PATH": "/bin", "JAVA_HOME": "/old"}
    )
    assert env == {
        "PATH": "/bin",
        "JAVA_HOME": "/opt/java",
        "PRUSTI_SERVER_ADDRESS": "localhost:1",
        "PRUSTI_QUIET": "false",
        "X": "1",
    }
    assert "PRUSTI_SERVER_ADDRESS" not in config.verifier_env(config.BridgeConfig(), base={})
