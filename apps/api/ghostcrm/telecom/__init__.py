from ghostcrm.telecom.context import TelecomContext, get_telecom_context
from ghostcrm.telecom.errors import (
    DecryptionError,
    IncompleteProviderSecretsError,
    MissingFieldsError,
    NoMembershipError,
    NoProviderConfiguredError,
    NumberNotFoundError,
    SignatureInvalidError,
    TelecomError,
    UnknownDestinationError,
    VendorError,
)
from ghostcrm.telecom.models import Message, PhoneNumber, ProviderAccount, ProviderSecret

__all__ = [
    "TelecomContext",
    "get_telecom_context",
    "TelecomError",
    "MissingFieldsError",
    "NoMembershipError",
    "NoProviderConfiguredError",
    "NumberNotFoundError",
    "VendorError",
    "DecryptionError",
    "SignatureInvalidError",
    "UnknownDestinationError",
    "IncompleteProviderSecretsError",
    "Message",
    "PhoneNumber",
    "ProviderAccount",
    "ProviderSecret",
]
