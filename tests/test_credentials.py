from __future__ import annotations

import json
import os
import stat
from pathlib import Path

import pytest

from kagglerun.credentials import CredentialResolver, SecretStore, parse_token
from kagglerun.models import ConfigError, NoCredentials


def _resolver(tmp_path: Path, environ: dict[str, str] | None = None) -> CredentialResolver:
    return CredentialResolver(
        SecretStore(tmp_path / "home" / "credentials.json"), environ=environ or {}
    )


def test_secret_store_takes_precedence_over_environment(tmp_path: Path) -> None:
    resolver = _resolver(
        tmp_path,
        {
            "KAGGLE_TOKEN_JSON": json.dumps({"username": "env-json", "key": "k1"}),
            "KAGGLE_USERNAME": "env-pair",
            "KAGGLE_KEY": "k2",
        },
    )
    resolver.secrets.store(json.dumps({"username": "stored", "key": "k0"}))

    creds = resolver.resolve()

    assert creds.username == "stored"
    assert creds.key == "k0"


def test_token_json_env_is_used_before_username_key_pair(tmp_path: Path) -> None:
    resolver = _resolver(
        tmp_path,
        {
            "KAGGLE_TOKEN_JSON": json.dumps({"username": "env-json", "key": "k1"}),
            "KAGGLE_USERNAME": "env-pair",
            "KAGGLE_KEY": "k2",
        },
    )

    assert resolver.resolve().username == "env-json"


def test_malformed_token_json_falls_through_to_pair(tmp_path: Path) -> None:
    resolver = _resolver(
        tmp_path,
        {
            "KAGGLE_TOKEN_JSON": "{not json",
            "KAGGLE_USERNAME": "alice",
            "KAGGLE_KEY": "secret",
        },
    )

    creds = resolver.resolve()

    assert (creds.username, creds.key) == ("alice", "secret")


def test_corrupt_secret_store_falls_through(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path, {"KAGGLE_USERNAME": "alice", "KAGGLE_KEY": "secret"})
    resolver.secrets.store(json.dumps({"username": "only-user"}))

    assert resolver.resolve().username == "alice"


def test_missing_credentials_raise(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path, {"KAGGLE_USERNAME": "alice"})

    with pytest.raises(NoCredentials, match="No Kaggle token found"):
        resolver.resolve()
    assert resolver.is_signed_in() is False
    assert resolver.username() is None


def test_parse_token_requires_both_fields() -> None:
    assert parse_token(None) is None
    assert parse_token("") is None
    assert parse_token("[]") is None
    assert parse_token(json.dumps({"username": "a", "key": ""})) is None
    assert parse_token(json.dumps({"username": "a", "key": 7})) is None
    creds = parse_token(json.dumps({"username": "a", "key": "b"}))
    assert creds is not None and creds.to_json() == {"username": "a", "key": "b"}


def test_store_token_file_persists_owner_only_secret(tmp_path: Path) -> None:
    token = tmp_path / "kaggle.json"
    token.write_text(json.dumps({"username": "alice", "key": "abc"}), encoding="utf-8")
    resolver = _resolver(tmp_path)

    creds = resolver.store_token_file(token)

    assert creds.username == "alice"
    assert resolver.is_signed_in() is True
    if os.name != "nt":
        mode = stat.S_IMODE(resolver.secrets.path.stat().st_mode)
        assert mode == 0o600


def test_store_token_file_rejects_invalid_payload(tmp_path: Path) -> None:
    token = tmp_path / "kaggle.json"
    token.write_text(json.dumps({"username": "alice"}), encoding="utf-8")
    resolver = _resolver(tmp_path)

    with pytest.raises(ConfigError, match="missing username/key"):
        resolver.store_token_file(token)
    with pytest.raises(ConfigError, match="not found"):
        resolver.store_token_file(tmp_path / "absent.json")
    assert resolver.secrets.get() is None


def test_sign_in_from_env_and_sign_out(tmp_path: Path) -> None:
    raw = json.dumps({"username": "bob", "key": "xyz"})
    resolver = _resolver(tmp_path, {"KAGGLE_TOKEN_JSON": raw})

    creds = resolver.sign_in_from_env()

    assert creds is not None and creds.username == "bob"
    assert resolver.secrets.get() == raw
    assert resolver.sign_out() is True
    assert resolver.secrets.get() is None
    assert resolver.sign_out() is False


def test_sign_in_from_env_ignores_invalid_token(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path, {"KAGGLE_TOKEN_JSON": "garbage"})

    assert resolver.sign_in_from_env() is None
    assert resolver.secrets.get() is None


def test_sign_in_requires_username_and_key(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path)

    with pytest.raises(ConfigError):
        resolver.sign_in("alice", "   ")
    creds = resolver.sign_in(" alice ", " key ")
    assert (creds.username, creds.key) == ("alice", "key")
