"""Lookup and storage of the OpenAI API key.

The key is read from ``OPENAI_API_KEY`` first and from the operating system
keyring second. Keys saved through the admin endpoint go to the keyring and
are mirrored into the process environment.
"""

import os
from typing import Optional

import keyring
from keyring.errors import KeyringError

SERVICE_NAME = "dental-logbook-openai"
ENV_VAR = "OPENAI_API_KEY"


class SecretError(Exception):
    """Base error for secret management failures."""


def get_api_key() -> Optional[str]:
    """Return the configured OpenAI key or ``None``."""

    key = os.getenv(ENV_VAR)
    if key:
        return key
    try:
        key = keyring.get_password(SERVICE_NAME, "api_key")
    except KeyringError:
        key = None
    if key:
        os.environ[ENV_VAR] = key
        return key
    return None


def save_api_key(key: str) -> None:
    """Persist *key* to the keyring and the current environment."""

    value = key.strip()
    if not value:
        raise SecretError("Key cannot be empty")
    try:
        keyring.set_password(SERVICE_NAME, "api_key", value)
    except KeyringError as exc:
        raise SecretError(f"Unable to store key: {exc}") from exc
    os.environ[ENV_VAR] = value
