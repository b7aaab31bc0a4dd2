"""Tests for labbook settings loading."""

import json

import pytest
from pydantic import ValidationError

from labbook.config import Settings, get_settings, load_settings, validate_backend_url


@pytest.fixture
def home(tmp_path):
    path = tmp_path / "home"
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_credentials(home, data):
    (home / "credentials.json").write_text(json.dumps(data))


class TestValidateBackendUrl:
    @pytest.mark.parametrize(
        "url",
        ["https://api.labbook.test", "http://localhost:8000", "http://127.0.0.1:9000/api"],
    )
    def test_accepted(self, url):
        assert validate_backend_url(url) == url

    @pytest.mark.parametrize(
        "url",
        ["ftp://api.labbook.test", "http://api.labbook.test", "https://", "", None],
    )
    def test_rejected(self, url):
        assert validate_backend_url(url) is None

    def test_localhost_http_can_be_disallowed(self):
        assert validate_backend_url("http://localhost:8000", allow_localhost_http=False) is None


class TestSettings:
    def test_defaults(self, home):
        settings = Settings()

        assert settings.backend_url is None
        assert settings.user_id is None
        assert settings.merge_dedup_key == "name"
        assert settings.remote_timeout == 10.0
        assert settings.has_remote is False
        assert settings.home == home
        assert settings.resolved_db_path == home / "labbook.db"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("LABBOOK_BACKEND_URL", "https://api.labbook.test/")
        monkeypatch.setenv("LABBOOK_AUTH_TOKEN", "secret")
        monkeypatch.setenv("LABBOOK_USER_ID", "user-1")
        monkeypatch.setenv("LABBOOK_MERGE_DEDUP_KEY", "identifier")

        settings = Settings()

        assert settings.backend_url == "https://api.labbook.test"
        assert settings.auth_token == "secret"
        assert settings.user_id == "user-1"
        assert settings.merge_dedup_key == "identifier"
        assert settings.has_remote is True

    def test_insecure_backend_url_dropped(self, monkeypatch):
        monkeypatch.setenv("LABBOOK_BACKEND_URL", "http://api.labbook.test")
        assert Settings().backend_url is None

    def test_unknown_dedup_key_rejected(self, monkeypatch):
        monkeypatch.setenv("LABBOOK_MERGE_DEDUP_KEY", "title")
        with pytest.raises(ValidationError):
            Settings()

    def test_explicit_db_path(self, tmp_path):
        settings = Settings(db_path=tmp_path / "custom.db")
        assert settings.resolved_db_path == tmp_path / "custom.db"


class TestCredentialsFile:
    def test_fills_unset_fields(self, home):
        write_credentials(
            home, {"backend_url": "https://api.labbook.test/", "auth_token": "file-token", "user_id": "file-user"}
        )

        settings = load_settings()

        assert settings.backend_url == "https://api.labbook.test"
        assert settings.auth_token == "file-token"
        assert settings.user_id == "file-user"

    def test_legacy_token_key(self, home):
        write_credentials(home, {"token": "legacy-token"})
        assert load_settings().auth_token == "legacy-token"

    def test_environment_wins(self, home, monkeypatch):
        write_credentials(home, {"user_id": "file-user", "auth_token": "file-token"})
        monkeypatch.setenv("LABBOOK_USER_ID", "env-user")

        settings = load_settings()

        assert settings.user_id == "env-user"
        assert settings.auth_token == "file-token"

    def test_insecure_file_url_ignored(self, home):
        write_credentials(home, {"backend_url": "http://api.labbook.test"})
        assert load_settings().backend_url is None

    def test_corrupt_file_ignored(self, home):
        (home / "credentials.json").write_text("{not json")
        assert load_settings().auth_token is None

    def test_missing_file(self, home):
        assert load_settings().user_id is None


class TestGetSettings:
    def test_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
