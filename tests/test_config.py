import json
import stat

import pytest

from plebproto import crypto
from plebproto.config import Settings, key_path, load_signer, save_signer


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("PLEBPROTO_PAGE_SIZE", "PLEBPROTO_ANONYMOUS_SIGNER", "PLEBPROTO_LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.page_size == 50
        assert settings.anonymous_pubsub_signer is True
        assert settings.log_level == "INFO"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PLEBPROTO_DATA_DIR", "/tmp/data")
        monkeypatch.setenv("PLEBPROTO_PAGE_SIZE", "7")
        monkeypatch.setenv("PLEBPROTO_CHALLENGE_TIMEOUT", "2.5")
        monkeypatch.setenv("PLEBPROTO_ANONYMOUS_SIGNER", "no")
        settings = Settings.from_env()
        assert settings.data_dir == "/tmp/data"
        assert settings.page_size == 7
        assert settings.challenge_timeout == 2.5
        assert settings.anonymous_pubsub_signer is False


class TestKeys:
    def test_load_creates_then_reuses(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PLEBPROTO_KEY_DIR", str(tmp_path))
        first = load_signer("alice")
        second = load_signer("alice")
        assert first.address == second.address
        path = key_path("alice")
        assert path == tmp_path / "alice_priv.key"
        assert json.loads(path.read_text())["type"] == crypto.ED25519
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_missing_without_create(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PLEBPROTO_KEY_DIR", str(tmp_path))
        with pytest.raises(FileNotFoundError):
            load_signer("nobody", create=False)

    def test_save_rsa(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PLEBPROTO_KEY_DIR", str(tmp_path / "nested"))
        signer = crypto.Signer.generate(crypto.RSA)
        save_signer("board", signer)
        assert load_signer("board", create=False).address == signer.address
