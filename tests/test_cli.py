"""Tests for the maintenance CLI in main.py.

Each test points DATABASE_URL at a throwaway SQLite file and clears the
settings cache on both sides, so the CLI builds its own backends exactly as
it would in production.
"""

from __future__ import annotations

import pytest

import main as cli
from auth.revocation import SQLRevocationStore
from auth.schema import create_schema, make_engine
from auth.store import SQLUserStore
from core.config import get_settings


@pytest.fixture
def db_url(tmp_path, monkeypatch: pytest.MonkeyPatch):
    url = f"sqlite:///{tmp_path / 'auth.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("BCRYPT_ROUNDS", "4")
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


class TestSweep:
    def test_removes_expired_records(self, db_url: str, capsys: pytest.CaptureFixture[str]) -> None:
        engine = make_engine(db_url)
        create_schema(engine)
        store = SQLRevocationStore(engine)
        store.revoke("stale", 1.0)
        store.revoke("live", 4_000_000_000.0)
        engine.dispose()

        assert cli.main(["sweep"]) == 0
        assert "Removed 1 expired revocation record(s)." in capsys.readouterr().out

        engine = make_engine(db_url)
        assert SQLRevocationStore(engine).is_revoked("live") is True
        engine.dispose()

    def test_requires_database_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "")
        get_settings.cache_clear()
        try:
            assert cli.main(["sweep"]) == 2
        finally:
            get_settings.cache_clear()


class TestCreateUser:
    def test_creates_account(self, db_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(cli.getpass, "getpass", lambda prompt="": "long-enough-pw")
        rc = cli.main(["create-user", "--username", "ops", "--email", "ops@example.com", "--role", "admin"])
        assert rc == 0

        engine = make_engine(db_url)
        account = SQLUserStore(engine).get_by_username("ops")
        assert account.roles == ["admin"]
        assert account.email == "ops@example.com"
        engine.dispose()

    def test_password_mismatch(self, db_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
        answers = iter(["long-enough-pw", "different-pw"])
        monkeypatch.setattr(cli.getpass, "getpass", lambda prompt="": next(answers))
        assert cli.main(["create-user", "--username", "ops", "--email", "ops@example.com"]) == 1

    def test_weak_password_reported(
        self, db_url: str, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setattr(cli.getpass, "getpass", lambda prompt="": "short")
        assert cli.main(["create-user", "--username", "ops", "--email", "ops@example.com"]) == 1
        assert "weak_password" in capsys.readouterr().out
