"""Tests covering profile loading."""

from __future__ import annotations

from pathlib import Path

from kamera.config import client_config, load_profile, relay_config


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "profiles.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_packaged_default_profile() -> None:
    relay = relay_config("default")
    client = client_config("default")

    assert relay.port == 3000
    assert relay.profile == "default"
    assert client.reconnect_delay == 3.0
    assert client.ice_servers[0] == "stun:stun.l.google.com:19302"
    assert client.preferred_video_codec is None


def test_named_profile_merges_over_default(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "default:\n  relay:\n    port: 4000\n    queue_size: 8\n"
        "lan:\n  relay:\n    port: 5000\n  client:\n    preferred_video_codec: H264\n",
    )

    merged = load_profile("lan", path)
    relay = relay_config("lan", path)
    client = client_config("lan", path)

    assert merged["relay"] == {"port": 5000, "queue_size": 8}
    assert relay.port == 5000
    assert relay.queue_size == 8
    assert client.preferred_video_codec == "H264"


def test_unknown_profile_falls_back_to_default(tmp_path: Path) -> None:
    path = _write(tmp_path, "default:\n  relay:\n    port: 4100\n")

    assert relay_config("missing", path).port == 4100


def test_missing_file_uses_builtin_defaults(tmp_path: Path) -> None:
    relay = relay_config("default", tmp_path / "nope.yaml")

    assert relay.port == 3000
    assert relay.ping_interval == 30.0


def test_cli_overrides_are_optional() -> None:
    from kamera.main import parse_args

    defaults = parse_args([])
    custom = parse_args(["--profile", "lan", "--port", "8080", "--log-level", "debug"])

    assert defaults.profile == "default"
    assert defaults.port is None
    assert custom.profile == "lan"
    assert custom.port == 8080
    assert custom.log_level == "debug"


def test_cli_port_zero_and_host_override_apply() -> None:
    from kamera.main import parse_args, resolve_config

    config = resolve_config(parse_args(["--port", "0", "--host", "127.0.0.1"]))
    untouched = resolve_config(parse_args([]))

    assert config.port == 0
    assert config.host == "127.0.0.1"
    assert untouched.port == 3000
    assert untouched.host == "0.0.0.0"
