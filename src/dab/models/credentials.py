"""Credential pool model."""

import threading
from typing import List

from pydantic import BaseModel, Field, PrivateAttr, field_validator

from dab.models.errors import NoCredentialsConfigured


class CredentialPool(BaseModel):
    """Ordered credentials for one logical provider plus a rotation cursor.

    The cursor only moves through ``next()``, once per call, under a lock.
    """

    provider: str = Field(..., min_length=1, description="Logical provider name")
    credentials: List[str] = Field(default_factory=list, description="Credentials in rotation order")
    cursor: int = Field(default=0, ge=0, description="Index of the next credential")

    _lock: threading.Lock = PrivateAttr(default_factory=threading.Lock)

    @field_validator('credentials')
    @classmethod
    def validate_credentials(cls, v):
        """Drop blank entries."""
        return [credential for credential in v if credential and credential.strip()]

    def next(self) -> str:
        """Return the credential under the cursor and advance it."""
        with self._lock:
            if not self.credentials:
                raise NoCredentialsConfigured(self.provider)
            credential = self.credentials[self.cursor % len(self.credentials)]
            self.cursor = (self.cursor + 1) % len(self.credentials)
            return credential

    def size(self) -> int:
        return len(self.credentials)
