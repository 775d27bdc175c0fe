"""
Freshdesk ticket API client (POST /api/v2/tickets).

Uses httpx.AsyncClient with basic auth (api_key:X). Tickets with an attachment are sent as
multipart form data, others as JSON. 5xx responses, timeouts and transport errors are retried
up to MAX_RETRIES times with a linear delay.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from typing import Any

import httpx

from chat_retention.errors import FreshdeskError

logger = logging.getLogger(__name__)

MAX_RETRIES = 2
DEFAULT_TIMEOUT = 25.0

_FORM_FIELDS = ("subject", "description", "email", "priority", "status", "type", "name", "group_id", "product_id")
_CUSTOM_FIELDS = ("general_questions_category", "general_questions_subcategory")
_DATA_URL_PREFIX = re.compile(r"^data:[^;]+;base64,")


def _decode_attachment(attachment: dict[str, Any]) -> tuple[str, bytes, str]:
    """Return (filename, content, mime) for a {"name", "content" (base64 or data URL), "mime"} attachment."""
    payload = _DATA_URL_PREFIX.sub("", attachment.get("content") or "")
    return (
        attachment.get("name") or "attachment",
        base64.b64decode(payload, validate=False),
        attachment.get("mime") or "application/octet-stream",
    )


def build_ticket_request(ticket_data: dict[str, Any]) -> dict[str, Any]:
    """
    Build httpx request kwargs for a ticket.

    Returns:
        {"json": {...}} without attachments, {"data": {...}, "files": [...]} with one.
        Only the first attachment is sent; an undecodable attachment is dropped with a warning.
    """
    fields = {k: ticket_data[k] for k in _FORM_FIELDS if ticket_data.get(k) not in (None, "")}
    custom = {k: v for k, v in (ticket_data.get("custom_fields") or {}).items() if k in _CUSTOM_FIELDS and v}

    attachments = ticket_data.get("attachments") or []
    files = []
    if attachments:
        try:
            files.append(("attachments[]", _decode_attachment(attachments[0])))
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Failed to decode Freshdesk attachment for {ticket_data.get('email')}: {e}")

    if not files:
        body = dict(fields)
        if custom:
            body["custom_fields"] = custom
        return {"json": body}

    data = {k: str(v) for k, v in fields.items()}
    for k, v in custom.items():
        data[f"custom_fields[{k}]"] = str(v)
    return {"data": data, "files": files}


class FreshdeskClient:
    """Creates tickets in one Freshdesk account (https://{domain}.freshdesk.com)."""

    def __init__(
        self,
        domain: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            domain: Freshdesk subdomain (e.g. "acme" for acme.freshdesk.com).
            api_key: Agent API key; sent as basic auth user with password "X".
            timeout: Per-request timeout in seconds.
            retry_delay: Base delay between retries; attempt n waits retry_delay * n.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        if not domain or not api_key:
            raise ValueError("Freshdesk domain and api_key are required")
        self.url = f"https://{domain}.freshdesk.com/api/v2/tickets"
        self._auth = (api_key, "X")
        self._timeout = timeout
        self._retry_delay = retry_delay
        self._transport = transport

    async def create_ticket(self, ticket_data: dict[str, Any]) -> dict[str, Any]:
        """
        Create a ticket and return the Freshdesk response body (contains "id").

        Raises:
            FreshdeskError: 4xx response, invalid body, or all attempts exhausted.
        """
        request_kwargs = build_ticket_request(ticket_data)
        last_error: Exception | None = None

        async with httpx.AsyncClient(auth=self._auth, timeout=self._timeout, transport=self._transport) as client:
            for attempt in range(MAX_RETRIES + 1):
                try:
                    response = await client.post(self.url, **request_kwargs)
                except httpx.TransportError as e:
                    last_error = e
                    logger.warning(f"Freshdesk request failed on attempt {attempt + 1}: {e!r}")
                else:
                    if response.status_code >= 500:
                        last_error = FreshdeskError(
                            f"Freshdesk API responded {response.status_code}: {response.text}",
                            status_code=response.status_code,
                        )
                        logger.warning(f"{last_error} (attempt {attempt + 1})")
                    elif response.is_error:
                        raise FreshdeskError(
                            f"Freshdesk API responded {response.status_code}: {response.text}",
                            status_code=response.status_code,
                        )
                    else:
                        return self._parse_ticket(response)

                if attempt < MAX_RETRIES:
                    await asyncio.sleep(self._retry_delay * (attempt + 1))

        raise FreshdeskError(
            f"Failed to create Freshdesk ticket after {MAX_RETRIES + 1} attempts. Last error: {last_error}",
            status_code=getattr(last_error, "status_code", None),
        )

    @staticmethod
    def _parse_ticket(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise FreshdeskError(f"Failed to parse Freshdesk response: {e}") from e
        if not isinstance(body, dict) or not body.get("id"):
            raise FreshdeskError(f"Freshdesk ticket created but invalid response: {body!r}")
        logger.info(f"Freshdesk ticket created: id={body['id']}")
        return body
