import json

import pytest
from pydantic import ValidationError

from subby.errors import KeyFileError
from subby.models.credentials import (
    CachedToken,
    ServiceAccountKey,
    TokenResponse,
    load_service_account_key,
)
from subby.models.settings import PubSubSettings


def test_parse_minimal_key():
    key = ServiceAccountKey.from_json(
        '{"private_key":"x","client_email":"a@b","project_id":"proj-1"}'
    )
    assert key.client_email == "a@b"
    assert key.project_id == "proj-1"
    assert key.token_uri is None


def test_parse_ignores_extra_fields(key_info):
    key = ServiceAccountKey.from_info(key_info)
    assert key.private_key_id == "abc123"
    assert not hasattr(key, "client_id")


def test_private_key_not_in_repr(key_info):
    key = ServiceAccountKey.from_info(key_info)
    assert "PRIVATE KEY" not in repr(key)


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        '{"client_email":"a@b"}',
        '{"private_key":"x"}',
        '{"private_key":"","client_email":"a@b"}',
        "[]",
    ],
)
def test_malformed_key_rejected(text):
    with pytest.raises(KeyFileError):
        ServiceAccountKey.from_json(text)


async def test_load_key_file(key_file):
    key = await load_service_account_key(key_file)
    assert key.project_id == "proj-1"


async def test_load_missing_key_file(tmp_path):
    missing = str(tmp_path / "nope.json")
    with pytest.raises(KeyFileError) as exc_info:
        await load_service_account_key(missing)
    assert exc_info.value.path == missing


async def test_load_malformed_key_file_mentions_path(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"client_email": "a@b"}))
    with pytest.raises(KeyFileError) as exc_info:
        await load_service_account_key(str(path))
    assert str(path) in str(exc_info.value)


def test_cached_token_expiry_is_inclusive():
    token = CachedToken(value="t", expires_at=100.0)
    assert not token.is_expired(99.9)
    assert token.is_expired(100.0)
    assert token.is_expired(100.1)
    assert token.is_expired(95.0, leeway=5.0)


def test_token_response_converts_relative_expiry():
    parsed = TokenResponse(access_token="abc", expires_in=3599)
    cached = parsed.to_cached(received_at=1000.0)
    assert cached.value == "abc"
    assert cached.expires_at == 4599.0


def test_leeway_is_capped():
    with pytest.raises(ValidationError):
        PubSubSettings(token_expiry_leeway_seconds=301)


def test_leeway_must_be_shorter_than_token_lifetime():
    with pytest.raises(ValidationError):
        PubSubSettings(token_lifetime_seconds=60, token_expiry_leeway_seconds=60)
    settings = PubSubSettings(token_lifetime_seconds=60, token_expiry_leeway_seconds=59)
    assert settings.token_expiry_leeway_seconds == 59
