"""Secret lookup used once at startup for every configured provider."""

import os
from abc import ABC, abstractmethod
from typing import Mapping, Optional


class CredentialSource(ABC):
    @abstractmethod
    def get_secret(self, name: str) -> Optional[str]:
        """Return the secret value, or None when it is not available."""


class EnvCredentialSource(CredentialSource):
    """Reads secrets from the process environment (populated from .env by load_dotenv)."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = os.environ if environ is None else environ

    def get_secret(self, name: str) -> Optional[str]:
        value = self._environ.get(name, "").strip()
        return value or None
