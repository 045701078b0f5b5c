import os

import pytest
from pydantic import ValidationError as PydanticValidationError

from feedsync.config import FeedSettings, load_settings


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Run without the developer's .env or FEEDSYNC_* variables."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.upper().startswith("FEEDSYNC_"):
            monkeypatch.delenv(key)


def test_defaults():
    settings = load_settings()
    assert settings.page_size == 50
    assert settings.max_send_attempts == 3
    assert settings.typing_timeout == 3.0
    assert settings.retry_base_delay == 1.0
    assert settings.max_reconnect_attempts == 5


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("FEEDSYNC_PAGE_SIZE", "20")
    monkeypatch.setenv("FEEDSYNC_SERVER_URL", "http://chat.example:9000")
    settings = load_settings()
    assert settings.page_size == 20
    assert settings.server_url == "http://chat.example:9000"


def test_dotenv_file_is_read(tmp_path):
    (tmp_path / ".env").write_text("FEEDSYNC_ECHO_TIMEOUT=7.5\n")
    assert FeedSettings().echo_timeout == 7.5


def test_explicit_overrides_win(monkeypatch):
    monkeypatch.setenv("FEEDSYNC_PAGE_SIZE", "20")
    assert load_settings(page_size=10).page_size == 10


@pytest.mark.parametrize("field, value", [
    ("page_size", 0),
    ("retry_base_delay", 0),
    ("typing_timeout", -1),
])
def test_invalid_numbers_rejected(field, value):
    with pytest.raises(PydanticValidationError):
        FeedSettings(**{field: value})


def test_load_settings_wraps_errors():
    with pytest.raises(ValueError, match="Failed to load configuration"):
        load_settings(retry_base_delay=10, retry_max_delay=1)
