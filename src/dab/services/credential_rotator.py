"""Round-robin credential rotation across providers.

The rotator owns one ``CredentialPool`` per logical provider. Callers bound
their retry loops with ``pool_size()`` so every credential is tried at most
once per request.
"""

import logging
import os
from typing import Dict, Iterable, List, Optional

from dab.models.credentials import CredentialPool
from dab.models.errors import NoCredentialsConfigured


class CredentialRotator:
    """Hands out credentials per provider in cyclic order."""

    def __init__(self, pools: Optional[Dict[str, List[str]]] = None):
        self.logger = logging.getLogger(__name__)
        self._pools: Dict[str, CredentialPool] = {}
        for provider, credentials in (pools or {}).items():
            self.register(provider, credentials)

    def register(self, provider: str, credentials: Iterable[str]) -> CredentialPool:
        """Create or replace the pool for ``provider``."""
        pool = CredentialPool(provider=provider, credentials=list(credentials))
        self._pools[provider] = pool
        self.logger.debug(f"Registered {pool.size()} credential(s) for provider {provider}")
        return pool

    def next(self, provider: str) -> str:
        """Return the next credential for ``provider`` and advance its cursor.

        Raises:
            NoCredentialsConfigured: The provider has no pool or an empty one
        """
        pool = self._pools.get(provider)
        if pool is None:
            raise NoCredentialsConfigured(provider)
        return pool.next()

    def pool_size(self, provider: str) -> int:
        pool = self._pools.get(provider)
        return pool.size() if pool else 0

    @property
    def providers(self) -> List[str]:
        return list(self._pools)

    @classmethod
    def from_environment(
        cls,
        prefixes: Dict[str, str],
        environ: Optional[Dict[str, str]] = None
    ) -> "CredentialRotator":
        """Load pools from ``<PREFIX>_API_KEY``, ``<PREFIX>_API_KEY_2``, ...

        Args:
            prefixes: Mapping of provider name to environment variable prefix
            environ: Environment to read, defaults to ``os.environ``

        Numbering stops at the first missing index.
        """
        env = os.environ if environ is None else environ
        rotator = cls()
        for provider, prefix in prefixes.items():
            credentials = []
            first = env.get(f"{prefix}_API_KEY")
            if first:
                credentials.append(first)
                index = 2
                while env.get(f"{prefix}_API_KEY_{index}"):
                    credentials.append(env[f"{prefix}_API_KEY_{index}"])
                    index += 1
            rotator.register(provider, credentials)
        return rotator
