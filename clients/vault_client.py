"""
HashiCorp Vault access for the service's secrets.

Authenticates with AppRole and reads KV v2 secrets under the 'unsent/'
prefix only. Missing configuration or unreadable secrets stop startup.

Layout:
    unsent/database  url
    unsent/session   signing_secret
    unsent/email     gateway_url, api_key, hmac_secret
"""

import os
import logging
import threading
from typing import Dict, Iterable

import hvac
from hvac.exceptions import InvalidPath, Unauthorized, Forbidden

logger = logging.getLogger(__name__)

_SECRET_PREFIX = "unsent"

_vault_client_instance: "VaultClient | None" = None
_secret_cache: Dict[str, str] = {}
_lock = threading.Lock()


class VaultClient:
    """AppRole-authenticated reader for secrets under the service prefix."""

    def __init__(
        self,
        vault_addr: str | None = None,
        vault_namespace: str | None = None,
        role_id: str | None = None,
        secret_id: str | None = None,
        mount_point: str = "secret",
    ):
        """Explicit arguments win over VAULT_* environment variables.

        Raises:
            ValueError: Address or AppRole credentials missing.
            PermissionError: AppRole login rejected.
        """
        self.vault_addr = vault_addr or os.getenv("VAULT_ADDR")
        self.vault_namespace = vault_namespace or os.getenv("VAULT_NAMESPACE")
        self.mount_point = mount_point
        role_id = role_id or os.getenv("VAULT_ROLE_ID")
        secret_id = secret_id or os.getenv("VAULT_SECRET_ID")

        if not self.vault_addr:
            raise ValueError("VAULT_ADDR environment variable is required")
        if not role_id or not secret_id:
            raise ValueError(
                "VAULT_ROLE_ID and VAULT_SECRET_ID environment variables are required"
            )

        client_kwargs = {"url": self.vault_addr}
        if self.vault_namespace:
            client_kwargs["namespace"] = self.vault_namespace
        self.client = hvac.Client(**client_kwargs)

        self._login(role_id, secret_id)
        logger.info(f"Vault client initialized: {self.vault_addr}")

    def _login(self, role_id: str, secret_id: str) -> None:
        try:
            auth_response = self.client.auth.approle.login(role_id=role_id, secret_id=secret_id)
        except Exception as e:
            logger.error(f"AppRole authentication failed: {e}")
            raise PermissionError(f"AppRole authentication failed: {e}")

        self.client.token = auth_response["auth"]["client_token"]
        if not self.client.is_authenticated():
            raise PermissionError("Vault authentication failed after AppRole login")

    def read_secret(self, path: str) -> Dict[str, str]:
        """All fields of the secret at 'unsent/<path>'.

        Raises:
            PermissionError: Path missing or not readable by this role.
        """
        full_path = f"{_SECRET_PREFIX}/{path}"
        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=full_path,
                mount_point=self.mount_point,
                raise_on_deleted_version=True,
            )
        except InvalidPath:
            logger.error(f"Secret path not found: {full_path}")
            raise PermissionError(f"Secret path '{full_path}' not found in Vault")
        except (Unauthorized, Forbidden) as e:
            logger.error(f"Access denied to secret {full_path}: {e}")
            raise PermissionError(f"Access denied to secret '{full_path}': {e}")
        return response["data"]["data"]

    def get_secrets(self, path: str, fields: Iterable[str]) -> Dict[str, str]:
        """Selected fields of one secret, read in a single request.

        Raises:
            PermissionError: Path missing or not readable by this role.
            KeyError: A requested field is absent.
        """
        data = self.read_secret(path)
        missing = [field for field in fields if field not in data]
        if missing:
            raise KeyError(
                f"Fields {missing} not found in secret '{_SECRET_PREFIX}/{path}'. "
                f"Available: {', '.join(data)}"
            )
        return {field: data[field] for field in fields}

    def get_secret(self, path: str, field: str) -> str:
        """One field of one secret. Same errors as get_secrets."""
        return self.get_secrets(path, [field])[field]


def _client() -> VaultClient:
    global _vault_client_instance
    if _vault_client_instance is None:
        _vault_client_instance = VaultClient()
    return _vault_client_instance


def _cached(path: str, fields: tuple[str, ...]) -> Dict[str, str]:
    """Read-through process cache. Secrets are read once per process."""
    with _lock:
        keys = {field: f"{path}/{field}" for field in fields}
        if not all(key in _secret_cache for key in keys.values()):
            values = _client().get_secrets(path, fields)
            for field, key in keys.items():
                _secret_cache[key] = values[field]
        return {field: _secret_cache[key] for field, key in keys.items()}


def reset_vault_state() -> None:
    """Forget the client and cached secrets (tests, credential rotation)."""
    global _vault_client_instance
    with _lock:
        _vault_client_instance = None
        _secret_cache.clear()


def get_database_url() -> str:
    """PostgreSQL DSN."""
    return _cached("database", ("url",))["url"]


def get_session_secret() -> str:
    """HMAC key used to sign session credentials."""
    return _cached("session", ("signing_secret",))["signing_secret"]


def get_email_config() -> Dict[str, str]:
    """Email gateway settings: gateway_url, api_key, hmac_secret."""
    return _cached("email", ("gateway_url", "api_key", "hmac_secret"))
