"""
SendPulse Delivery Gateway

Production gateway for the SendPulse SMTP API.
Authenticates with OAuth client credentials and caches the access token.
"""

import base64
import logging
import time
from typing import Any

import httpx

from engagement_engine.providers.base import (
    DeliveryGateway,
    ProviderError,
    ProviderMessageStats,
    SendResult,
)
from engagement_engine.templates.registry import extract_body, html_to_text

logger = logging.getLogger(__name__)

# Refresh the token this many seconds before SendPulse expires it
TOKEN_REFRESH_MARGIN_SEC = 30
DEFAULT_TOKEN_TTL_SEC = 3600
STATS_PAGE_LIMIT = 1000


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


class SendPulseDeliveryGateway(DeliveryGateway):
    """
    SendPulse SMTP API gateway.

    HTML is sent base64 encoded as the API requires, with a plain-text
    fallback derived from it when no text body is given.
    """

    name = "sendpulse"

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        from_email: str,
        from_name: str,
        token_url: str = "https://api.sendpulse.com/oauth/access_token",
        send_url: str = "https://api.sendpulse.com/smtp/emails",
        timeout: float = 30.0,
        clock=time.time,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.from_email = from_email
        self.from_name = from_name
        self.token_url = token_url
        self.send_url = send_url
        self.timeout = timeout
        self._clock = clock
        self._client: httpx.AsyncClient | None = None
        self._token: str | None = None
        self._token_expires_at: float = 0.0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def get_token(self) -> str:
        """Return a cached access token, fetching a new one when near expiry."""
        now = self._clock()
        if self._token and now < self._token_expires_at - TOKEN_REFRESH_MARGIN_SEC:
            return self._token

        if not self.client_id or not self.client_secret:
            raise ProviderError(
                "Email service is not configured (SendPulse credentials missing)",
                code="NOT_CONFIGURED",
            )

        data = await self._make_request(
            "POST",
            self.token_url,
            json_data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        token = data.get("access_token")
        if not token:
            raise ProviderError("Failed to obtain SendPulse access token", code="AUTH_FAILED")

        self._token = token
        self._token_expires_at = now + float(data.get("expires_in") or DEFAULT_TOKEN_TTL_SEC)
        return token

    async def _make_request(
        self,
        method: str,
        url: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> Any:
        """Make an API request, optionally authenticated."""
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {token}"} if token else {}

        try:
            if method.upper() == "GET":
                response = await client.get(url, headers=headers, params=params)
            else:
                response = await client.post(url, headers=headers, json=json_data)
        except httpx.RequestError as e:
            logger.error(f"SendPulse request failed: {e}")
            raise ProviderError(
                message=f"HTTP request failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            )

        try:
            response_data = response.json()
        except ValueError:
            response_data = {"raw": response.text}

        if response.status_code >= 400:
            message = "Unknown error"
            if isinstance(response_data, dict):
                message = str(
                    _first(response_data, "message", "error_description", "error") or message
                )
            raise ProviderError(
                message=message,
                code=str(response.status_code),
                details=response_data if isinstance(response_data, dict) else {},
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        return response_data

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        to_name: str | None = None,
    ) -> SendResult:
        """Send one email via the SMTP API."""
        body = extract_body(html)
        recipient: dict[str, str] = {"email": to}
        if to_name:
            recipient["name"] = to_name

        payload = {
            "email": {
                "subject": subject,
                "from": {"email": self.from_email, "name": self.from_name},
                "to": [recipient],
                "html": base64.b64encode(body.encode("utf-8")).decode("ascii"),
                "text": text or html_to_text(body),
            }
        }

        try:
            token = await self.get_token()
            response = await self._make_request("POST", self.send_url, json_data=payload, token=token)
        except ProviderError as e:
            logger.warning(
                f"SendPulse send failed: {e}",
                extra={"to": to, "code": e.code},
            )
            return SendResult(success=False, error=str(e))

        message_id = None
        if isinstance(response, dict):
            message_id = _first(response, "id", "email_id", "smtp_id", "message_id")
        if not message_id:
            logger.info("SendPulse response without message id", extra={"to": to})

        logger.info(
            f"Sent email via SendPulse",
            extra={"to": to, "message_id": message_id, "html_length": len(body)},
        )

        return SendResult(
            success=True,
            provider_message_id=str(message_id) if message_id else None,
            raw_response=response if isinstance(response, dict) else {},
        )

    async def fetch_message_stats(self) -> list[ProviderMessageStats]:
        """Pull the most recent SMTP message statistics."""
        token = await self.get_token()
        data = await self._make_request(
            "GET",
            self.send_url,
            params={"limit": STATS_PAGE_LIMIT, "offset": 0},
            token=token,
        )

        if isinstance(data, list):
            entries = data
        elif isinstance(data, dict):
            entries = data.get("data") or data.get("emails") or []
        else:
            entries = []

        stats = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            parsed = parse_stats_entry(entry)
            if parsed is None:
                logger.debug("Stats entry without id", extra={"keys": sorted(entry)})
                continue
            stats.append(parsed)
        return stats


def parse_stats_entry(entry: dict[str, Any]) -> ProviderMessageStats | None:
    """Map one SendPulse statistics entry; None when it has no message id."""
    message_id = _first(entry, "id", "smtp_id", "email_id", "message_id")
    if not message_id:
        return None

    tracking = entry.get("tracking") if isinstance(entry.get("tracking"), dict) else {}
    status = _first(entry, "status", "email_status")

    return ProviderMessageStats(
        provider_message_id=str(message_id),
        status=str(status).lower() if status else None,
        opened=bool(tracking.get("opened") or entry.get("open_count") or entry.get("opened")),
        clicked=bool(tracking.get("clicked") or entry.get("click_count") or entry.get("clicked")),
        error=_first(entry, "error_message", "error"),
    )
