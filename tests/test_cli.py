"""Tests for the Tessera CLI."""

import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import yaml
from click.testing import CliRunner
from conftest import SECRET

from tessera import __version__
from tessera.cli import main
from tessera.storage.credentials import AuthenticatorRecord, CredentialStore, UserRecord
from tessera.storage.kv import KeyValueStore
from tessera.storage.sessions import SessionState, SessionStore


# ── Helpers ───────────────────────────────────────────────────────────────────


def _write_config(path: Path, **session_overrides: object) -> Path:
    """Write a minimal valid config storing data next to it."""
    session: dict = {"secret": SECRET}
    session.update(session_overrides)
    path.write_text(
        yaml.dump({"storage": {"path": str(path.parent / "data")}, "session": session})
    )
    return path


def _add_user(config: Path, handle: str, *transports: str) -> None:
    store = CredentialStore(KeyValueStore(config.parent / "data" / "users"))
    store.create(
        handle,
        UserRecord(
            user_id=b"\x07" * 32,
            handle=handle,
            display_name=handle,
            authenticators=[
                AuthenticatorRecord(
                    credential_id=b"cred-1",
                    public_key=b"pk",
                    sign_count=12,
                    transports=list(transports),
                )
            ],
        ),
    )


def _invoke(config: Path, *args: str):
    return CliRunner().invoke(main, ["--config", str(config), *args])


# ── Config error paths ────────────────────────────────────────────────────────


class TestLoadSettingsErrors:
    """_load_settings calls sys.exit(1) for bad configs; CliRunner captures that."""

    def test_missing_config_exits_1(self, tmp_path: Path) -> None:
        result = _invoke(tmp_path / "nope.yaml", "users", "list")
        assert result.exit_code == 1
        assert "tessera init" in result.output

    def test_empty_config_exits_1(self, tmp_path: Path) -> None:
        config = tmp_path / "config.yaml"
        config.write_text("")
        result = _invoke(config, "users", "list")
        assert result.exit_code == 1
        assert "empty" in result.output

    def test_invalid_config_exits_1(self, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml", ttl=1)
        result = _invoke(config, "users", "list")
        assert result.exit_code == 1
        assert "session.ttl" in result.output

    def test_config_from_environment(self, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml")
        result = CliRunner().invoke(
            main, ["users", "list"], env={"TESSERA_CONFIG": str(config)}
        )
        assert result.exit_code == 0
        assert "No users registered." in result.output


class TestVersion:
    def test_version(self) -> None:
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


# ── init ──────────────────────────────────────────────────────────────────────


class TestInit:
    def test_writes_config(self, tmp_path: Path) -> None:
        config = tmp_path / "conf" / "config.yaml"
        result = _invoke(config, "init", "--rp-id", "example.com", "--storage", "/srv/t")
        assert result.exit_code == 0
        raw = yaml.safe_load(config.read_text())
        assert raw["relying_party"]["id"] == "example.com"
        assert raw["relying_party"]["origin"] == "https://example.com"
        assert raw["storage"]["path"] == "/srv/t"
        assert len(raw["session"]["secret"]) == 64

    def test_explicit_origin(self, tmp_path: Path) -> None:
        config = tmp_path / "config.yaml"
        _invoke(config, "init", "--rp-id", "localhost", "--origin", "http://localhost:9000")
        raw = yaml.safe_load(config.read_text())
        assert raw["relying_party"]["origin"] == "http://localhost:9000"

    def test_refuses_to_overwrite(self, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml")
        before = config.read_text()
        result = _invoke(config, "init")
        assert result.exit_code == 1
        assert "already exists" in result.output
        assert config.read_text() == before

    def test_force_overwrites(self, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml")
        result = _invoke(config, "init", "--force")
        assert result.exit_code == 0
        assert yaml.safe_load(config.read_text())["session"]["secret"] != SECRET


# ── users ─────────────────────────────────────────────────────────────────────


class TestUsers:
    def test_list_empty(self, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml")
        result = _invoke(config, "users", "list")
        assert result.exit_code == 0
        assert "No users registered." in result.output

    def test_list(self, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml")
        _add_user(config, "alice")
        _add_user(config, "bob")
        result = _invoke(config, "users", "list")
        assert result.exit_code == 0
        assert "HANDLE" in result.output
        assert "alice" in result.output
        assert "bob" in result.output

    def test_show(self, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml")
        _add_user(config, "alice", "usb", "nfc")
        result = _invoke(config, "users", "show", "alice")
        assert result.exit_code == 0
        assert "Handle:   alice" in result.output
        assert "Y3JlZC0x" in result.output
        assert "counter=12" in result.output
        assert "transports=usb, nfc" in result.output

    def test_show_unknown(self, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml")
        result = _invoke(config, "users", "show", "ghost")
        assert result.exit_code == 1
        assert "not found" in result.output


# ── sessions ──────────────────────────────────────────────────────────────────


class TestSessionsPurge:
    def test_purges_expired_only(self, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml")
        store = SessionStore(KeyValueStore(tmp_path / "data" / "sessions"))
        store.save("live", SessionState(), ttl=600)
        store.save("stale", SessionState(), ttl=30)

        with patch("tessera.storage.sessions.time.time", return_value=time.time() + 60):
            result = _invoke(config, "sessions", "purge")

        assert result.exit_code == 0
        assert "Removed 1 expired session(s)." in result.output
        assert KeyValueStore(tmp_path / "data" / "sessions").keys() == ["live"]

    def test_nothing_to_purge(self, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml")
        result = _invoke(config, "sessions", "purge")
        assert result.exit_code == 0
        assert "Removed 0 expired session(s)." in result.output


# ── serve ─────────────────────────────────────────────────────────────────────


class TestServe:
    @patch("uvicorn.run")
    def test_serve_starts_uvicorn(self, mock_run: MagicMock, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml")
        result = _invoke(config, "serve", "--port", "9001")
        assert result.exit_code == 0
        mock_run.assert_called_once()
        assert mock_run.call_args.kwargs["host"] == "127.0.0.1"
        assert mock_run.call_args.kwargs["port"] == 9001
        assert mock_run.call_args.args[0].state.settings.session_secret == SECRET

    @patch("uvicorn.run")
    def test_serve_purges_expired_sessions_at_startup(
        self, mock_run: MagicMock, tmp_path: Path
    ) -> None:
        config = _write_config(tmp_path / "config.yaml")
        store = SessionStore(KeyValueStore(tmp_path / "data" / "sessions"))
        store.save("live", SessionState(), ttl=600)
        store.save("stale", SessionState(), ttl=30)

        with patch("tessera.storage.sessions.time.time", return_value=time.time() + 60):
            result = _invoke(config, "serve")

        assert result.exit_code == 0
        mock_run.assert_called_once()
        assert KeyValueStore(tmp_path / "data" / "sessions").keys() == ["live"]

    @patch("uvicorn.run")
    def test_serve_without_purge_interval(self, mock_run: MagicMock, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml", purge_interval=0)
        store = SessionStore(KeyValueStore(tmp_path / "data" / "sessions"))
        store.save("stale", SessionState(), ttl=30)

        with (
            patch("tessera.storage.sessions.time.time", return_value=time.time() + 60),
            patch("tessera.scheduler.runner.SessionPurger") as mock_purger,
        ):
            result = _invoke(config, "serve")

        assert result.exit_code == 0
        mock_purger.assert_not_called()
        assert KeyValueStore(tmp_path / "data" / "sessions").keys() == ["stale"]

    @patch("uvicorn.run", side_effect=RuntimeError("bind failed"))
    def test_serve_stops_purger_when_server_exits(
        self, mock_run: MagicMock, tmp_path: Path
    ) -> None:
        config = _write_config(tmp_path / "config.yaml", purge_interval=120)
        with patch("tessera.scheduler.runner.SessionPurger") as mock_purger:
            result = _invoke(config, "serve")

        assert isinstance(result.exception, RuntimeError)
        purger = mock_purger.return_value
        assert mock_purger.call_args.args[1] == 120
        purger.run_now.assert_called_once()
        purger.start.assert_called_once()
        purger.stop.assert_called_once_with(wait=False)

    def test_serve_help_mentions_purge(self) -> None:
        result = CliRunner().invoke(main, ["serve", "--help"])
        assert result.exit_code == 0
        assert "tessera sessions purge" in result.output

    @patch("uvicorn.run")
    def test_serve_invalid_config_exits_1(self, mock_run: MagicMock, tmp_path: Path) -> None:
        config = _write_config(tmp_path / "config.yaml", ttl=99999)
        result = _invoke(config, "serve")
        assert result.exit_code == 1
        assert "session.ttl" in result.output
        mock_run.assert_not_called()
