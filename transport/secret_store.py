"""
Transport - Secret Store.

Credentials are opaque to the engine: it asks a SecretStore by
name and hands the result to the transport. Encryption at rest
is the store's concern.
"""

import os
import re
from abc import ABC, abstractmethod
from typing import Dict, Optional

from transport.types import Credential


class SecretStore(ABC):
    """Named credential lookup."""

    @abstractmethod
    def get(self, name: str) -> Optional[Credential]:
        """Get a credential by name, None when unknown."""


class InMemorySecretStore(SecretStore):
    """Credentials held in a dict."""

    def __init__(self, credentials: Optional[Dict[str, Credential]] = None):
        self._credentials = dict(credentials or {})

    def put(self, name: str, credential: Credential) -> None:
        self._credentials[name] = credential

    def get(self, name: str) -> Optional[Credential]:
        return self._credentials.get(name)


class EnvSecretStore(SecretStore):
    """
    Credentials from environment variables.

    Name "fleet-default" reads FLEET_SECRET_FLEET_DEFAULT_USERNAME
    and FLEET_SECRET_FLEET_DEFAULT_PASSWORD.
    """

    PREFIX = "FLEET_SECRET_"

    def get(self, name: str) -> Optional[Credential]:
        stem = self.PREFIX + re.sub(r"[^A-Za-z0-9]", "_", name).upper()
        username = os.getenv(f"{stem}_USERNAME")
        password = os.getenv(f"{stem}_PASSWORD")
        if not username or password is None:
            return None
        return Credential(username=username, secret=password)
