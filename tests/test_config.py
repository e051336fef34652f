from __future__ import annotations

from pathlib import Path

import pytest

from duet.config import ConfigError, IceServer, load_config


def test_packaged_defaults() -> None:
    config = load_config(environ={})

    assert config.relay.port == 3001
    assert config.relay.cors_origins == ["*"]
    assert config.client.server_url == "ws://localhost:3001/ws"
    assert config.client.negotiation_timeout is None
    assert [server.urls for server in config.client.ice_servers] == [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    ]
    media = config.client.media
    assert (media.width, media.height) == (1280, 720)
    assert media.sample_rate == 44100


def test_port_environment_variable_overrides_relay_port() -> None:
    assert load_config(environ={"PORT": "8080"}).relay.port == 8080

    with pytest.raises(ConfigError):
        load_config(environ={"PORT": "eighty"})


def test_user_file_is_merged_over_defaults(tmp_path: Path) -> None:
    path = tmp_path / "duet.yaml"
    path.write_text(
        "relay:\n"
        "  port: 4000\n"
        "client:\n"
        "  negotiation_timeout: 5\n"
        "  media:\n"
        "    video: false\n"
        "  ice_servers:\n"
        "    - urls: [turn:turn.example.com:3478]\n"
        "      username: duet\n"
        "      credential: secret\n"
    )

    config = load_config(path, environ={})

    assert config.relay.port == 4000
    assert config.relay.host == "0.0.0.0"
    assert config.client.negotiation_timeout == 5.0
    assert config.client.media.video is False
    assert config.client.media.audio is True
    assert config.client.ice_servers == [
        IceServer(urls="turn:turn.example.com:3478", username="duet", credential="secret")
    ]


def test_missing_or_invalid_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml", environ={})

    broken = tmp_path / "broken.yaml"
    broken.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config(broken, environ={})
