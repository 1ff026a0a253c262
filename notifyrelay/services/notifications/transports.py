from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import hashlib
import hmac
import json
from typing import Any, Mapping, Protocol
from uuid import uuid4

import httpx

from notifyrelay.core.config import Settings, get_settings
from notifyrelay.core.errors import (
    PermanentRejectionError,
    RateLimitedError,
    ServerError,
    TransportTimeoutError,
)
from notifyrelay.domain.notifications import Channel


PAYLOAD_SOURCE = "notifyrelay"
PAYLOAD_VERSION = "1.0"


@dataclass(frozen=True)
class OutboundMessage:
    event_id: str
    event_type: str
    user_id: str
    project_id: str | None
    subject: str
    body: str
    timestamp: datetime
    context: Mapping[str, Any] = field(default_factory=dict)


class ChannelTransport(Protocol):
    # Return a provider message id; raise a TransportError subclass on failure.
    async def send(self, channel: Channel, recipient: str | None, message: OutboundMessage) -> str: ...


def serialize_payload(payload: dict[str, Any]) -> bytes:
    # Deterministic bytes so signatures verify identically across retries.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def compute_signature(payload_bytes: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_payload(message: OutboundMessage, *, channel: Channel, recipient: str | None) -> dict[str, Any]:
    return {
        "eventType": message.event_type,
        "eventId": message.event_id,
        "timestamp": message.timestamp.isoformat(),
        "data": {
            "channel": channel.value,
            "recipient": recipient,
            "userId": message.user_id,
            "projectId": message.project_id,
            "subject": message.subject,
            "body": message.body,
            "context": dict(message.context),
        },
        "metadata": {"source": PAYLOAD_SOURCE, "version": PAYLOAD_VERSION},
    }


def raise_for_delivery_status(response: httpx.Response) -> None:
    # 408/timeouts and 429 and 5xx are transient; every other 4xx is permanent.
    status = int(response.status_code)
    if status < 400:
        return
    detail = f"receiver responded {status}"
    if status == 408:
        raise TransportTimeoutError(detail, status_code=status)
    if status == 429:
        raise RateLimitedError(detail, status_code=status)
    if status >= 500:
        raise ServerError(detail, status_code=status)
    raise PermanentRejectionError(detail, status_code=status)


def _message_id(response: httpx.Response) -> str:
    header_id = response.headers.get("x-message-id")
    if header_id:
        return header_id
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("messageId", "message_id", "id"):
            value = payload.get(key)
            if isinstance(value, (str, int)) and str(value):
                return str(value)
    return uuid4().hex


class HttpTransport:
    # POST JSON to a destination; noop:// destinations succeed without network calls.
    def __init__(self, *, timeout_ms: int, client: httpx.AsyncClient | None = None) -> None:
        self._timeout_s = max(0.2, timeout_ms / 1000.0)
        self._client = client

    async def _post(self, destination: str, payload_bytes: bytes, headers: dict[str, str]) -> str:
        if destination.startswith("noop://"):
            return f"noop-{uuid4().hex}"
        try:
            if self._client is not None:
                response = await self._client.post(
                    destination, content=payload_bytes, headers=headers, timeout=self._timeout_s
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.post(destination, content=payload_bytes, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportTimeoutError(f"delivery to {destination} timed out") from exc
        except httpx.TransportError as exc:
            raise ServerError(f"delivery to {destination} failed: {exc.__class__.__name__}") from exc
        raise_for_delivery_status(response)
        return _message_id(response)


class WebhookTransport(HttpTransport):
    def __init__(
        self,
        *,
        timeout_ms: int,
        signing_secret: str | None = None,
        api_key: str | None = None,
        auth_scheme: str = "api_key",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout_ms=timeout_ms, client=client)
        self._signing_secret = signing_secret
        self._api_key = api_key
        self._auth_scheme = auth_scheme

    def _headers(self, message: OutboundMessage, payload_bytes: bytes) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Notification-Id": message.event_id,
            "X-Notification-Event-Type": message.event_type,
            "X-Notification-Timestamp": message.timestamp.isoformat(),
        }
        if self._signing_secret:
            headers["X-Notification-Signature"] = compute_signature(payload_bytes, self._signing_secret)
        if self._api_key:
            if self._auth_scheme == "bearer":
                headers["Authorization"] = f"Bearer {self._api_key}"
            else:
                headers["X-API-Key"] = self._api_key
        return headers

    async def send(self, channel: Channel, recipient: str | None, message: OutboundMessage) -> str:
        if not recipient:
            raise PermanentRejectionError("webhook url is not configured")
        payload_bytes = serialize_payload(build_payload(message, channel=channel, recipient=recipient))
        return await self._post(recipient, payload_bytes, self._headers(message, payload_bytes))


class RelayTransport(HttpTransport):
    # Hand the message to a relay endpoint that owns the last hop for its channel.
    def __init__(self, *, url: str, timeout_ms: int, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(timeout_ms=timeout_ms, client=client)
        self._url = url

    async def send(self, channel: Channel, recipient: str | None, message: OutboundMessage) -> str:
        if not recipient:
            raise PermanentRejectionError(f"no recipient for {channel.value}")
        payload_bytes = serialize_payload(build_payload(message, channel=channel, recipient=recipient))
        headers = {"Content-Type": "application/json", "X-Notification-Id": message.event_id}
        return await self._post(self._url, payload_bytes, headers)


def build_transports(
    settings: Settings | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> dict[Channel, ChannelTransport]:
    settings = settings or get_settings()
    return {
        Channel.WEBHOOK: WebhookTransport(
            timeout_ms=settings.webhook_timeout_ms,
            signing_secret=settings.webhook_signing_secret,
            api_key=settings.webhook_api_key,
            auth_scheme=settings.webhook_auth_scheme,
            client=client,
        ),
        Channel.BROADCAST: RelayTransport(
            url=settings.broadcast_publish_url,
            timeout_ms=settings.broadcast_timeout_ms,
            client=client,
        ),
        Channel.EMAIL: RelayTransport(url=settings.email_relay_url, timeout_ms=settings.broadcast_timeout_ms, client=client),
        Channel.SMS: RelayTransport(url=settings.sms_relay_url, timeout_ms=settings.broadcast_timeout_ms, client=client),
        Channel.IN_APP: RelayTransport(
            url=settings.in_app_relay_url, timeout_ms=settings.broadcast_timeout_ms, client=client
        ),
    }
