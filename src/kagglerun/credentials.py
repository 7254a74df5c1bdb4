from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Mapping

from kagglerun._logging import get_logger
from kagglerun.models import ConfigError, Credentials, NoCredentials
from kagglerun.utils import atomic_write_text, kagglerun_home

TOKEN_JSON_ENV = "KAGGLE_TOKEN_JSON"
USERNAME_ENV = "KAGGLE_USERNAME"
KEY_ENV = "KAGGLE_KEY"
SECRET_FILE = "credentials.json"

_log = get_logger("credentials")


def parse_token(raw: str | None) -> Credentials | None:
    """Parse a ``kaggle.json`` style payload; malformed input yields ``None``."""
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return Credentials.from_json(payload)


class SecretStore:
    """Owner-readable file holding the raw token JSON."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path is not None else kagglerun_home() / SECRET_FILE

    def get(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def store(self, raw: str) -> None:
        atomic_write_text(self.path, raw, mode=0o600)

    def delete(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


class CredentialResolver:
    def __init__(
        self,
        secrets: SecretStore | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ):
        self.secrets = secrets if secrets is not None else SecretStore()
        self._environ = environ

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def resolve(self) -> Credentials:
        creds = parse_token(self.secrets.get())
        if creds is not None:
            _log.debug("credentials_resolved source=secret_store")
            return creds

        creds = parse_token(self.environ.get(TOKEN_JSON_ENV))
        if creds is not None:
            _log.debug("credentials_resolved source=%s", TOKEN_JSON_ENV)
            return creds

        creds = Credentials.from_json(
            {
                "username": self.environ.get(USERNAME_ENV),
                "key": self.environ.get(KEY_ENV),
            }
        )
        if creds is not None:
            _log.debug("credentials_resolved source=%s/%s", USERNAME_ENV, KEY_ENV)
            return creds

        raise NoCredentials(
            "No Kaggle token found. Run 'kagglerun auth sign-in' or set "
            f"{TOKEN_JSON_ENV} / {USERNAME_ENV} & {KEY_ENV}."
        )

    def is_signed_in(self) -> bool:
        try:
            self.resolve()
        except NoCredentials:
            return False
        return True

    def username(self) -> str | None:
        try:
            return self.resolve().username
        except NoCredentials:
            return None

    def sign_in_from_env(self) -> Credentials | None:
        """Persist ``KAGGLE_TOKEN_JSON`` when it holds a valid token."""
        raw = self.environ.get(TOKEN_JSON_ENV)
        creds = parse_token(raw)
        if creds is None or raw is None:
            return None
        self.secrets.store(raw)
        _log.info("credentials_stored source=%s user=%s", TOKEN_JSON_ENV, creds.username)
        return creds

    def sign_in(self, username: str, key: str) -> Credentials:
        creds = Credentials.from_json({"username": username.strip(), "key": key.strip()})
        if creds is None:
            raise ConfigError("Both a Kaggle username and API key are required.")
        self.secrets.store(json.dumps(creds.to_json()))
        _log.info("credentials_stored source=prompt user=%s", creds.username)
        return creds

    def store_token_file(self, path: str | Path) -> Credentials:
        token_path = Path(path).expanduser().resolve()
        if not token_path.is_file():
            raise ConfigError(f"Token file not found: {token_path}")
        raw = token_path.read_text(encoding="utf-8")
        creds = parse_token(raw)
        if creds is None:
            raise ConfigError(f"Invalid kaggle.json (missing username/key): {token_path}")
        self.secrets.store(raw)
        _log.info("credentials_stored source=file user=%s", creds.username)
        return creds

    def sign_out(self) -> bool:
        removed = self.secrets.delete()
        _log.info("credentials_cleared removed=%s", removed)
        return removed
