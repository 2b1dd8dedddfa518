"""
Credentials Management
======================

IMAP account credentials come from the biosecret CLI at startup and live in
this process only. Tests mock subprocess.

INV-GLOBAL-03: Credentials retrieved at startup, held in memory only.
"""

import json
import subprocess
from dataclasses import dataclass, field
from typing import Any, Mapping

from contracts import (
    BiosecretDeniedError,
    BiosecretNotFoundError,
)

BIOSECRET_TIMEOUT_SECONDS = 30
DEFAULT_IMAP_SERVER = "outlook.office365.com"


@dataclass(frozen=True)
class Credentials:
    """IMAP account credentials held in memory only."""

    username: str
    password: str = field(repr=False)
    server: str
    port: int = 993
    use_ssl: bool = True
    from_name: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Credentials":
        """Build from the JSON object biosecret stores. KeyError if incomplete."""
        return cls(
            username=data["username"],
            password=data["password"],
            server=data.get("server", DEFAULT_IMAP_SERVER),
            port=int(data.get("port", 993)),
            use_ssl=bool(data.get("use_ssl", True)),
            from_name=data.get("from_name", ""),
        )

    @property
    def from_address(self) -> str:
        """Formatted From header for drafts saved by this account."""
        if self.from_name:
            return f'"{self.from_name}" <{self.username}>'
        return self.username

    @property
    def domain(self) -> str:
        _, _, domain = self.username.partition("@")
        return domain or "localhost"


def biosecret_key(account_id: str) -> str:
    return f"draft-mcp/{account_id}"


def retrieve_credentials(account_id: str) -> Credentials:
    """
    Retrieve credentials via biosecret CLI.

    PRE: biosecret CLI is available in PATH
    PRE: credentials stored under biosecret_key(account_id)

    ERRORS:
    - BiosecretDeniedError: biometric prompt cancelled, denied or timed out
    - BiosecretNotFoundError: no CLI, no entry, or an unreadable entry
    """
    try:
        result = subprocess.run(
            ["biosecret", "get", biosecret_key(account_id)],
            capture_output=True,
            text=True,
            timeout=BIOSECRET_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired as e:
        raise BiosecretDeniedError("Biometric authentication timed out") from e
    except FileNotFoundError as e:
        raise BiosecretNotFoundError("biosecret CLI not found in PATH") from e

    if result.returncode != 0:
        stderr = (result.stderr or "").lower()
        if "cancel" in stderr or "denied" in stderr:
            raise BiosecretDeniedError("User cancelled biometric authentication")
        raise BiosecretNotFoundError(f"No credentials found for {account_id}")

    try:
        return Credentials.from_mapping(json.loads(result.stdout))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise BiosecretNotFoundError("Invalid credential format") from e
