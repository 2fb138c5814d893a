"""Credential persistence in the OS credential store.

Three entries live under one service name: the access token record
(JSON with the token, its expiry and granted scopes), the refresh token,
and the account descriptor. Encryption at rest is left to the platform
keychain that `keyring` selects.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

import keyring
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError, PasswordDeleteError

from onenote_mcp.auth.models.errors import TokenStoreError
from onenote_mcp.auth.models.tokens import AccountDescriptor, Credential
from onenote_mcp.auth.primitives.redaction import redact, secret_registry

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "onenote-mcp"
ACCESS_TOKEN_ENTRY = "microsoft-graph-token"
REFRESH_TOKEN_ENTRY = "microsoft-graph-refresh-token"
ACCOUNT_INFO_ENTRY = "microsoft-graph-account-info"


class TokenStore:
    """Reads and writes the signed-in account's credential.

    All methods are coroutines; the blocking keyring calls run in a
    worker thread so a slow keychain unlock does not stall the event loop.
    """

    def __init__(
        self,
        service_name: str = DEFAULT_SERVICE_NAME,
        backend: KeyringBackend | None = None,
    ):
        """Initialize the token store.

        Args:
            service_name: Keyring service the three entries are filed under
            backend: Explicit keyring backend; defaults to the platform one
        """
        self.service_name = service_name
        self._backend = backend

    async def load(self) -> Credential:
        """Load the stored credential.

        Read failures are logged and treated as "nothing stored" so the
        caller falls through to sign-in instead of crashing.

        Returns:
            Credential: Stored values, or an empty Credential
        """
        access_token, expires_at, scope = await self._load_access_record()
        refresh_token = await self._read(REFRESH_TOKEN_ENTRY)
        account = await self._load_account()

        secret_registry.register(access_token, refresh_token)
        return Credential(
            access_token=access_token,
            expires_at=expires_at if access_token else None,
            refresh_token=refresh_token,
            account=account,
            scope=scope,
        )

    async def save(self, credential: Credential) -> None:
        """Persist a credential.

        The refresh token and account are written before the access token
        record, so a reader never finds a rotated access token paired with
        a refresh token that has already been invalidated. A missing
        refresh token or account leaves the stored one untouched.

        Raises:
            TokenStoreError: If the credential store rejects a write
        """
        secret_registry.register(credential.access_token, credential.refresh_token)

        if credential.refresh_token:
            await self._write(REFRESH_TOKEN_ENTRY, credential.refresh_token)

        if credential.account is not None:
            await self._write(
                ACCOUNT_INFO_ENTRY, json.dumps(credential.account.to_dict())
            )

        if credential.access_token:
            record = {
                "token": credential.access_token,
                "expiresAt": _format_timestamp(credential.expires_at),
                "scope": credential.scope,
            }
            await self._write(ACCESS_TOKEN_ENTRY, json.dumps(record))

        logger.debug(
            f"Saved credential to {self.service_name} "
            f"(expires_at={credential.expires_at})"
        )

    async def delete(self) -> None:
        """Delete all stored entries. Missing entries are ignored.

        Raises:
            TokenStoreError: If the credential store rejects a delete
        """
        for entry in (ACCESS_TOKEN_ENTRY, REFRESH_TOKEN_ENTRY, ACCOUNT_INFO_ENTRY):
            await self._delete(entry)
        logger.info(f"Deleted stored credential from {self.service_name}")

    async def _load_access_record(
        self,
    ) -> tuple[str | None, float | None, str | None]:
        raw = await self._read(ACCESS_TOKEN_ENTRY)
        if not raw:
            return None, None, None

        try:
            record = json.loads(raw)
        except json.JSONDecodeError:
            # Legacy format: the bare token string with no expiry
            return raw, None, None

        if not isinstance(record, dict):
            return raw, None, None

        token = record.get("token") or None
        return token, _parse_timestamp(record.get("expiresAt")), record.get("scope")

    async def _load_account(self) -> AccountDescriptor | None:
        raw = await self._read(ACCOUNT_INFO_ENTRY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable account info in credential store")
            return None
        if not isinstance(data, dict):
            return None
        return AccountDescriptor.from_dict(data)

    async def _read(self, entry: str) -> str | None:
        try:
            return await asyncio.to_thread(self._get_password, entry)
        except KeyringError as e:
            logger.error(f"Error reading {entry} from credential store: {redact(e)}")
            return None

    async def _write(self, entry: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._set_password, entry, value)
        except KeyringError as e:
            raise TokenStoreError(
                f"Failed to write {entry} to credential store: {redact(e, [value])}"
            ) from e

    async def _delete(self, entry: str) -> None:
        try:
            await asyncio.to_thread(self._delete_password, entry)
        except PasswordDeleteError:
            pass  # Nothing stored under this entry
        except KeyringError as e:
            raise TokenStoreError(
                f"Failed to delete {entry} from credential store: {e}"
            ) from e

    def _get_password(self, entry: str) -> str | None:
        if self._backend is not None:
            return self._backend.get_password(self.service_name, entry)
        return keyring.get_password(self.service_name, entry)

    def _set_password(self, entry: str, value: str) -> None:
        if self._backend is not None:
            self._backend.set_password(self.service_name, entry, value)
        else:
            keyring.set_password(self.service_name, entry, value)

    def _delete_password(self, entry: str) -> None:
        if self._backend is not None:
            self._backend.delete_password(self.service_name, entry)
        else:
            keyring.delete_password(self.service_name, entry)


def _format_timestamp(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def _parse_timestamp(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        # Older records end in "Z"
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unreadable token expiry {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()
