"""
Vault Client Utility for the Reconciliation Pipeline

Retrieves the audit database credentials and the site controller API token
from HashiCorp Vault (KV v2).
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import hvac
from hvac.exceptions import InvalidPath, VaultError

logger = logging.getLogger(__name__)

AUDIT_DB_SECRET = "audit-db-credentials"
SITE_CONTROLLER_SECRET = "site-controller-credentials"


@dataclass
class HealthStatus:
    """
    Structured health status for Vault client.

    Attributes:
        healthy: Overall health status (True if healthy)
        authenticated: Whether client is authenticated
        sealed: Whether Vault is sealed
        error: Error message if health check failed
    """

    healthy: bool
    authenticated: bool
    sealed: bool
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.healthy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "authenticated": self.authenticated,
            "sealed": self.sealed,
            "error": self.error,
        }


class VaultClient:
    """Client for reading pipeline secrets from HashiCorp Vault."""

    def __init__(
        self,
        vault_url: Optional[str] = None,
        vault_token: Optional[str] = None,
        verify_ssl: bool = True,
        mount_point: str = "secret"
    ):
        """
        Initialize Vault client.

        Args:
            vault_url: Vault server URL (defaults to VAULT_ADDR env var)
            vault_token: Vault authentication token (defaults to VAULT_TOKEN env var)
            verify_ssl: Whether to verify SSL certificates
            mount_point: KV secrets engine mount point

        Raises:
            ValueError: If URL or token are missing
            VaultError: If connection or authentication fails
        """
        self.vault_url = vault_url or os.getenv("VAULT_ADDR")
        self.vault_token = vault_token or os.getenv("VAULT_TOKEN")
        self.mount_point = mount_point

        if not self.vault_url:
            raise ValueError("Vault URL must be provided via parameter or VAULT_ADDR environment variable")

        if not self.vault_token:
            raise ValueError("Vault token must be provided via parameter or VAULT_TOKEN environment variable")

        try:
            self.client = hvac.Client(
                url=self.vault_url,
                token=self.vault_token,
                verify=verify_ssl
            )
            authenticated = self.client.is_authenticated()
        except Exception as e:
            logger.error(f"Failed to initialize Vault client: {e}")
            raise VaultError(f"Vault initialization failed: {e}")

        if not authenticated:
            logger.error(f"Vault at {self.vault_url} rejected the token")
            raise VaultError("Failed to authenticate with Vault")

        logger.info(f"Connected to Vault at {self.vault_url}")

    def get_secret(self, path: str) -> Dict[str, Any]:
        """
        Retrieve a secret from Vault.

        Args:
            path: Secret path (e.g., "audit-db-credentials")

        Returns:
            Dictionary containing secret data

        Raises:
            InvalidPath: If secret path does not exist
            VaultError: If retrieval fails
        """
        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=path,
                mount_point=self.mount_point
            )
        except InvalidPath:
            logger.error(f"Secret not found at path: {path}")
            raise
        except Exception as e:
            logger.error(f"Failed to retrieve secret from {path}: {e}")
            raise VaultError(f"Secret retrieval failed: {e}")

        if not response or "data" not in response:
            raise InvalidPath(f"No data found at path: {path}")

        logger.debug(f"Retrieved secret from {self.mount_point}/data/{path}")
        return response["data"].get("data", {})

    def get_audit_db_credentials(self) -> Dict[str, Any]:
        """
        Retrieve the audit database credentials.

        Returns:
            Dictionary with host, port, database, user, password (any subset)
        """
        return self.get_secret(AUDIT_DB_SECRET)

    def get_site_controller_token(self) -> Optional[str]:
        """
        Retrieve the site controller API token.

        Returns:
            The token, or None if the secret carries none
        """
        secret = self.get_secret(SITE_CONTROLLER_SECRET)
        return secret.get("api_token") or secret.get("token")

    def health_check(self) -> HealthStatus:
        """
        Check if Vault is accessible, authenticated and unsealed.

        Returns:
            HealthStatus; usable as a boolean
        """
        try:
            if not self.client.is_authenticated():
                logger.warning("Vault authentication check failed")
                return HealthStatus(healthy=False, authenticated=False, sealed=True, error="Not authenticated")

            health = self.client.sys.read_health_status(method="GET")
            sealed = health.get("sealed", True) if isinstance(health, dict) else True
        except Exception as e:
            logger.error(f"Vault health check failed: {e}")
            return HealthStatus(healthy=False, authenticated=False, sealed=True, error=str(e))

        if sealed:
            logger.warning("Vault is sealed")
        return HealthStatus(
            healthy=not sealed,
            authenticated=True,
            sealed=sealed,
            error="Vault is sealed" if sealed else None
        )

    def close(self) -> None:
        """Release the underlying hvac client."""
        self.client = None
        logger.debug("Vault client closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
