from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import requests
from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from ghostcrm.metrics import observe_vendor_request
from ghostcrm.telecom.errors import IncompleteProviderSecretsError, UnsupportedProviderError, VendorError


SUPPORTED_PROVIDERS = ("twilio", "telnyx")
REQUIRED_SECRET_KEYS: dict[str, tuple[str, ...]] = {
    "twilio": ("account_sid", "auth_token"),
    "telnyx": ("api_key",),
}


@dataclass(slots=True)
class SendResult:
    provider_message_id: str
    status: str | None = None


class SmsAdapter(Protocol):
    provider: str

    def send_sms(self, to: str, from_: str | None, body: str) -> SendResult: ...

    def lookup_numbers(self, e164: str) -> list[str]: ...

    def close(self) -> None: ...


class TwilioAdapter:
    provider = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        *,
        messaging_service_sid: str | None = None,
        timeout: float | None = None,
        client: Client | None = None,
    ) -> None:
        self.messaging_service_sid = messaging_service_sid
        self._http_client: TwilioHttpClient | None = None
        if client is None:
            self._http_client = TwilioHttpClient(timeout=timeout)
            client = Client(account_sid, auth_token, http_client=self._http_client)
        self._client = client

    def close(self) -> None:
        if self._http_client is not None and self._http_client.session is not None:
            self._http_client.session.close()

    def send_sms(self, to: str, from_: str | None, body: str) -> SendResult:
        params: dict[str, Any] = {"to": to, "body": body}
        if from_:
            params["from_"] = from_
        elif self.messaging_service_sid:
            params["messaging_service_sid"] = self.messaging_service_sid
        else:
            raise VendorError(self.provider, "no sender number or messaging service configured")

        started = time.perf_counter()
        try:
            message = self._client.messages.create(**params)
        except TwilioException as exc:
            raise VendorError(self.provider, getattr(exc, "msg", None) or str(exc)) from exc
        except requests.RequestException as exc:
            raise VendorError(self.provider, str(exc) or exc.__class__.__name__) from exc
        finally:
            observe_vendor_request(self.provider, "send_sms", time.perf_counter() - started)
        return SendResult(provider_message_id=message.sid, status=message.status)

    def lookup_numbers(self, e164: str) -> list[str]:
        started = time.perf_counter()
        try:
            numbers = self._client.incoming_phone_numbers.list(phone_number=e164, limit=20)
        except TwilioException as exc:
            raise VendorError(self.provider, getattr(exc, "msg", None) or str(exc)) from exc
        except requests.RequestException as exc:
            raise VendorError(self.provider, str(exc) or exc.__class__.__name__) from exc
        finally:
            observe_vendor_request(self.provider, "lookup_numbers", time.perf_counter() - started)
        return [number.phone_number for number in numbers]


class TelnyxAdapter:
    provider = "telnyx"

    def __init__(
        self,
        api_key: str,
        *,
        messaging_profile_id: str | None = None,
        base_url: str = "https://api.telnyx.com/v2",
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.messaging_profile_id = messaging_profile_id
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        started = time.perf_counter()
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise VendorError(self.provider, str(exc) or exc.__class__.__name__) from exc
        finally:
            observe_vendor_request(self.provider, operation, time.perf_counter() - started)

        if response.is_error:
            raise VendorError(self.provider, _telnyx_error_text(response))
        try:
            document = response.json()
        except ValueError as exc:
            raise VendorError(self.provider, f"telnyx http {response.status_code}: response is not JSON") from exc
        if not isinstance(document, dict):
            raise VendorError(self.provider, f"telnyx http {response.status_code}: unexpected response body")
        return document

    def send_sms(self, to: str, from_: str | None, body: str) -> SendResult:
        payload: dict[str, Any] = {"to": to, "text": body}
        if from_:
            payload["from"] = from_
        if self.messaging_profile_id:
            payload["messaging_profile_id"] = self.messaging_profile_id
        if "from" not in payload and "messaging_profile_id" not in payload:
            raise VendorError(self.provider, "no sender number or messaging profile configured")

        data = self._request("send_sms", "POST", "/messages", json=payload).get("data")
        message_id = data.get("id") if isinstance(data, dict) else None
        if not message_id:
            raise VendorError(self.provider, "telnyx response did not include a message id")
        to_entries = data.get("to") or [{}]
        first = to_entries[0] if isinstance(to_entries, list) and isinstance(to_entries[0], dict) else {}
        return SendResult(provider_message_id=str(message_id), status=first.get("status"))

    def lookup_numbers(self, e164: str) -> list[str]:
        data = self._request(
            "lookup_numbers",
            "GET",
            "/phone_numbers",
            params={"filter[phone_number]": e164},
        ).get("data") or []
        if not isinstance(data, list):
            raise VendorError(self.provider, "telnyx phone number listing was not a list")
        return [item["phone_number"] for item in data if isinstance(item, dict) and item.get("phone_number")]


def _telnyx_error_text(response: httpx.Response) -> str:
    try:
        document = response.json()
    except ValueError:
        return f"telnyx http {response.status_code}: {response.text[:300]}"
    errors = document.get("errors") if isinstance(document, dict) else None
    if not isinstance(errors, list):
        errors = []
    details = [str(item.get("detail") or item.get("title")) for item in errors if isinstance(item, dict)]
    if not details:
        return f"telnyx http {response.status_code}"
    return "; ".join(details)


class AdapterFactory(Protocol):
    def __call__(self, provider_id: str, secrets: dict[str, Any], meta: dict[str, Any]) -> SmsAdapter: ...


@dataclass(slots=True)
class VendorAdapterFactory:
    """Builds a vendor client from decrypted account secrets."""

    telnyx_api_base_url: str = "https://api.telnyx.com/v2"
    timeout_seconds: float | None = None

    def __call__(self, provider_id: str, secrets: dict[str, Any], meta: dict[str, Any]) -> SmsAdapter:
        if provider_id not in REQUIRED_SECRET_KEYS:
            raise UnsupportedProviderError(f"unsupported provider '{provider_id}'")
        missing = [key for key in REQUIRED_SECRET_KEYS[provider_id] if not secrets.get(key)]
        if missing:
            raise IncompleteProviderSecretsError(f"{provider_id} account secrets lack {', '.join(missing)}")

        if provider_id == "twilio":
            return TwilioAdapter(
                str(secrets["account_sid"]),
                str(secrets["auth_token"]),
                messaging_service_sid=secrets.get("messaging_service_sid") or meta.get("messaging_service_sid"),
                timeout=self.timeout_seconds,
            )
        return TelnyxAdapter(
            str(secrets["api_key"]),
            messaging_profile_id=secrets.get("messaging_profile_id") or meta.get("messaging_profile_id"),
            base_url=self.telnyx_api_base_url,
            timeout=self.timeout_seconds,
        )
