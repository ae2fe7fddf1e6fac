from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

messages_dispatched_total = Counter(
    "messages_dispatched_total",
    "Outbound messages by provider and terminal status",
    ["provider", "status"],
)

vendor_request_duration_seconds = Histogram(
    "vendor_request_duration_seconds",
    "Outbound vendor API call duration in seconds",
    ["provider", "operation"],
)

webhooks_received_total = Counter(
    "webhooks_received_total",
    "Inbound vendor webhooks by outcome",
    ["vendor", "outcome"],
)

secret_decrypt_failures_total = Counter(
    "secret_decrypt_failures_total",
    "Provider secret blobs that failed to decrypt",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_message_dispatched(provider: str, status: str) -> None:
    messages_dispatched_total.labels(provider=provider, status=status).inc()


def observe_vendor_request(provider: str, operation: str, duration: float) -> None:
    vendor_request_duration_seconds.labels(provider=provider, operation=operation).observe(duration)


def observe_webhook(vendor: str, outcome: str) -> None:
    webhooks_received_total.labels(vendor=vendor, outcome=outcome).inc()


def observe_secret_decrypt_failure() -> None:
    secret_decrypt_failures_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
