"""Notification delivery collaborators.

The dispatch sweep only knows the ``DeliveryService`` protocol: ``send`` either
returns normally (delivered) or raises ``DeliveryFailure``.  Timeouts are
enforced by the caller, not here.

``BrevoEmailDelivery`` sends reminders through the Brevo transactional email
API.  Environment:
    BREVO_API_KEY: API key (see ``src.config.Settings``)
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from src.tracking.errors import DeliveryFailure
from src.tracking.records import Notification
from src.tracking.storage.base import ProfileReader

logger = logging.getLogger("mikvahcal.tracking.delivery")

_BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"


class DeliveryService(Protocol):
    async def send(self, notification: Notification) -> None:
        """Deliver one notification.

        Raises:
            DeliveryFailure: The notification could not be delivered.
        """
        ...


class BrevoEmailDelivery:
    """Send notifications as transactional emails via Brevo.

    Usage::

        delivery = BrevoEmailDelivery(api_key=settings.brevo_api_key,
                                      profiles=PostgresProfileReader())
        await delivery.send(notification)
    """

    def __init__(
        self,
        api_key: str,
        profiles: ProfileReader,
        sender_email: str = "no-reply@freemikvahcal.com",
        sender_name: str = "FreeMikvahCal",
        api_url: str = _BREVO_API_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the delivery service.

        Args:
            api_key:      Brevo API key.
            profiles:     Resolves a user's contact email.
            sender_email: From address.
            sender_name:  From display name.
            api_url:      Brevo send endpoint.
            http_client:  Optional pre-configured httpx client (for testing).
        """
        self._api_key = api_key
        self._profiles = profiles
        self._sender = {"email": sender_email, "name": sender_name}
        self._api_url = api_url
        self._http_client = http_client

    def _build_payload(self, notification: Notification, email: str) -> dict:
        body = notification.message
        if notification.hebrew_date:
            body = f"{body}\n\n{notification.hebrew_date}"
        return {
            "sender": self._sender,
            "to": [{"email": email}],
            "subject": notification.title,
            "textContent": body,
            "tags": [notification.type.value],
        }

    async def send(self, notification: Notification) -> None:
        email = await self._profiles.get_contact_email(notification.user_id)
        if not email:
            raise DeliveryFailure(f"No contact email for user {notification.user_id}")

        headers = {"api-key": self._api_key, "Content-Type": "application/json"}
        payload = self._build_payload(notification, email)
        try:
            if self._http_client:
                response = await self._http_client.post(self._api_url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self._api_url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DeliveryFailure(
                f"Brevo rejected notification {notification.id}: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DeliveryFailure(f"Brevo request failed: {exc}") from exc

        logger.debug("Delivered notification %s to Brevo", notification.id)
