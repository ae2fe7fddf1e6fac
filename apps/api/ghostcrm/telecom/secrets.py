from __future__ import annotations

import base64
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from sqlalchemy import select
from sqlalchemy.orm import Session

from ghostcrm.metrics import observe_secret_decrypt_failure
from ghostcrm.telecom.errors import DecryptionError, SecretKeyMissingError
from ghostcrm.telecom.models import ProviderSecret


logger = logging.getLogger("ghostcrm.telecom.secrets")


def derive_fernet_key(master_key: str) -> bytes:
    """Stretch an arbitrary master key string into a urlsafe 32-byte Fernet key."""
    digest = hashlib.sha256(master_key.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def new_secret_ref(organization_id: uuid.UUID, provider_id: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return f"org_{organization_id.hex}:{provider_id}:{stamp}:{uuid.uuid4().hex[:12]}"


@dataclass(slots=True)
class SecretStore:
    """Encrypts provider credentials per organization.

    The first key encrypts; every key (current first, then fallbacks) is tried
    on decrypt so the master key can be rotated without re-encrypting rows.
    """

    master_key: str | None
    fallback_master_keys: list[str] = field(default_factory=list)

    def _cipher(self) -> MultiFernet:
        if not self.master_key:
            raise SecretKeyMissingError("secrets master key is not configured")
        keys = [self.master_key, *[key for key in self.fallback_master_keys if key]]
        return MultiFernet([Fernet(derive_fernet_key(key)) for key in keys])

    def encrypt(self, secrets: dict[str, Any]) -> str:
        plaintext = json.dumps(secrets, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return self._cipher().encrypt(plaintext).decode("ascii")

    def decrypt(self, ciphertext: str) -> dict[str, Any]:
        cipher = self._cipher()
        try:
            plaintext = cipher.decrypt(ciphertext.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as exc:
            observe_secret_decrypt_failure()
            raise DecryptionError("secret blob could not be authenticated") from exc

        decoded = json.loads(plaintext)
        if not isinstance(decoded, dict):
            raise DecryptionError("secret blob did not contain an object")
        return decoded

    def save(
        self,
        session: Session,
        organization_id: uuid.UUID,
        provider_id: str,
        secrets: dict[str, Any],
    ) -> str:
        """Insert a new encrypted blob and return its reference. Never updates an existing row."""
        ref = new_secret_ref(organization_id, provider_id)
        session.add(
            ProviderSecret(
                ref=ref,
                organization_id=organization_id,
                provider_id=provider_id,
                ciphertext=self.encrypt(secrets),
            )
        )
        session.flush()
        logger.info(
            "secret.saved",
            extra={"organization_id": str(organization_id), "provider": provider_id},
        )
        return ref

    def load(self, session: Session, ref: str) -> dict[str, Any]:
        row = session.scalar(select(ProviderSecret).where(ProviderSecret.ref == ref))
        if row is None:
            raise DecryptionError("secret reference not found")
        try:
            return self.decrypt(row.ciphertext)
        except DecryptionError:
            logger.warning(
                "secret.decrypt_failed",
                extra={"organization_id": str(row.organization_id), "provider": row.provider_id},
            )
            raise
