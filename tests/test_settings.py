import os

import pytest

from companion.settings import Settings


@pytest.fixture
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("COMPANION_"):
            monkeypatch.delenv(name)


def test_defaults_without_environment(clean_env):
    s = Settings(_env_file=None)

    assert s.PRODUCTS == {}
    assert s.CODE_TTL_SECONDS == 600
    assert s.SESSION_TTL_SECONDS == 900
    assert s.callback_url == "https://localhost:3000/authresponse"
    assert s.verification_url("ABC123") == "https://localhost:3000/provision/ABC123"


def test_products_from_environment(clean_env, monkeypatch):
    monkeypatch.setenv("COMPANION_PRODUCTS", '{"prod-1": ["dsn-42", "dsn-43"]}')
    s = Settings(_env_file=None)
    assert s.PRODUCTS == {"prod-1": ["dsn-42", "dsn-43"]}
