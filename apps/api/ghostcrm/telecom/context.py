from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache

from ghostcrm.core.config import get_settings
from ghostcrm.telecom.adapters import AdapterFactory, VendorAdapterFactory
from ghostcrm.telecom.secrets import SecretStore


@dataclass(slots=True)
class TelecomContext:
    """Process-wide telephony configuration handed to every handler.

    Read-only after construction; tests build their own instance with stub
    adapters instead of patching module state.
    """

    secret_store: SecretStore
    adapter_factory: AdapterFactory = field(default_factory=VendorAdapterFactory)
    twilio_auth_token: str | None = None
    telnyx_public_key: str | None = None
    telnyx_timestamp_tolerance_seconds: int = 300
    public_base_url: str | None = None


@lru_cache
def _default_telecom_context() -> TelecomContext:
    settings = get_settings()
    return TelecomContext(
        secret_store=SecretStore(
            master_key=settings.secrets_master_key,
            fallback_master_keys=list(settings.secrets_fallback_master_keys),
        ),
        adapter_factory=VendorAdapterFactory(
            telnyx_api_base_url=settings.telnyx_api_base_url,
            timeout_seconds=settings.vendor_timeout_seconds,
        ),
        twilio_auth_token=settings.twilio_auth_token,
        telnyx_public_key=settings.telnyx_public_key,
        telnyx_timestamp_tolerance_seconds=settings.telnyx_timestamp_tolerance_seconds,
        public_base_url=settings.public_base_url,
    )


def get_telecom_context() -> TelecomContext:
    return _default_telecom_context()
