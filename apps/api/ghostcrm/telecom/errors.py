from __future__ import annotations


class TelecomError(Exception):
    """Base class for failures surfaced by the messaging and telephony layer.

    Each subclass carries a stable ``code`` and the HTTP status it maps to at
    the request boundary.
    """

    code = "telecom_error"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code
        super().__init__(self.message)


class MissingFieldsError(TelecomError):
    code = "missing fields"
    status_code = 400

    def __init__(self, fields: list[str]) -> None:
        self.fields = sorted(set(fields))
        super().__init__(f"missing fields: {', '.join(self.fields)}")


class InvalidPhoneNumberError(TelecomError):
    code = "invalid_e164"
    status_code = 400


class NoMembershipError(TelecomError):
    code = "no_membership"
    status_code = 403


class ProviderAccountNotFoundError(TelecomError):
    code = "provider_account_not_found"
    status_code = 404


class PhoneNumberAlreadyRegisteredError(TelecomError):
    code = "number_already_registered"
    status_code = 409


class NoProviderConfiguredError(TelecomError):
    code = "no_provider_configured"
    status_code = 422


class UnsupportedProviderError(TelecomError):
    code = "unsupported_provider"
    status_code = 400


class IncompleteProviderSecretsError(TelecomError):
    """Stored account secrets lack a key the vendor client needs."""

    code = "provider_secrets_incomplete"
    status_code = 422


class NumberNotFoundError(TelecomError):
    """The vendor reported no number matching the one being registered."""

    code = "number_not_owned"
    status_code = 400


class VendorError(TelecomError):
    """An upstream vendor call failed; ``message`` keeps the raw vendor text."""

    code = "vendor_error"
    status_code = 502

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(message)


class DecryptionError(TelecomError):
    code = "decryption_failed"
    status_code = 500


class SecretKeyMissingError(DecryptionError):
    code = "secret_key_missing"


class SignatureInvalidError(TelecomError):
    code = "invalid_signature"
    status_code = 403


class UnknownDestinationError(TelecomError):
    code = "unknown_destination"
    status_code = 404
