"""Payd M-Pesa API client."""
import logging
import re
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config import Settings

from .adapters import ProviderResult, parse_provider_payload, unwrap
from .errors import (
    ProviderRejectedError,
    ProviderTransportError,
    StatusQueryUnsupported,
    ValidationError,
)
from .models import WebhookChannel

logger = logging.getLogger(__name__)

STK_PHONE_PATTERN = re.compile(r"^254[17]\d{8}$")
PAYOUT_PHONE_PATTERN = re.compile(r"^0[17]\d{8}$")


def _digits(phone: str) -> str:
    return re.sub(r"[^\d]", "", phone or "")


def normalize_msisdn(phone: str) -> str:
    """
    Normalize a Kenyan mobile number to the STK push format 254XXXXXXXXX.

    Accepts 07.., 01.., 7.., 1.., +254.. and 254.. forms.

    Raises:
        ValidationError: If the result is not a valid Safaricom/Airtel number
    """
    digits = _digits(phone)
    if digits.startswith("0") and len(digits) == 10:
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "254" + digits

    if not STK_PHONE_PATTERN.match(digits):
        raise ValidationError(f"Invalid phone number '{phone}'. Use format 07XXXXXXXX or 2547XXXXXXXX")
    return digits


def normalize_payout_number(phone: str) -> str:
    """Normalize a number to the payout format 0XXXXXXXXX."""
    digits = _digits(phone)
    if digits.startswith("254") and len(digits) == 12:
        digits = "0" + digits[3:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "0" + digits

    if not PAYOUT_PHONE_PATTERN.match(digits):
        raise ValidationError(f"Invalid M-Pesa number '{phone}'. Use format 07XXXXXXXX")
    return digits


def _amount(value: Decimal) -> Any:
    return int(value) if value == value.to_integral_value() else float(value)


class PaydClient:
    """Talks to Payd; transport failures are retried with exponential backoff."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the client.

        Args:
            settings: Service settings carrying credentials, URLs and retry policy
            http_client: Preconfigured client, e.g. one with a mock transport
        """
        self.settings = settings
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
        self.auth = httpx.BasicAuth(settings.payd_username, settings.payd_password)

    async def close(self):
        if self._owns_client:
            await self.http_client.aclose()

    async def initiate_payment(
        self,
        *,
        amount: Decimal,
        phone_number: str,
        invoice_id: str,
        narration: str,
    ) -> Optional[str]:
        """
        Send an STK push.

        Returns:
            The provider reference to correlate the callback with, or None
            when Payd accepted the push without one (the prompt is already on
            the phone, so callers correlate by invoice id instead)

        Raises:
            ProviderTransportError: Provider unreachable after all attempts
            ProviderRejectedError: Provider refused the request
        """
        body = {
            "username": self.settings.payd_username,
            "channel": "MPESA",
            "amount": _amount(amount),
            "phone_number": phone_number,
            "narration": narration,
            "currency": self.settings.currency,
            "callback_url": self.settings.payment_callback_url,
            "reference": invoice_id,
        }

        data = await self._request("POST", f"{self.settings.payd_base_url}/payments", json=body)
        reference = self._extract_reference(data, "transaction_reference", "correlator_id", "reference")
        if not reference:
            logger.warning(f"Payd accepted payment {invoice_id} without a reference: {data}")
            return None

        logger.info(f"Payd STK push accepted for {invoice_id} (reference={reference})")
        return reference

    async def query_payment_status(self, reference: str) -> ProviderResult:
        """Ask Payd for the current state of a payment-in transaction."""
        data = await self._request("GET", f"{self.settings.payd_base_url}/transactions/{reference}")
        return parse_provider_payload(data, WebhookChannel.PAYMENT, default_reference=reference)

    async def initiate_payout(self, *, amount: Decimal, mpesa_number: str, narration: str) -> Optional[str]:
        """
        Send money to a seller's M-Pesa number.

        Returns:
            Payd ``correlator_id``, echoed back in the payout callback. None
            when Payd accepted the payout without one.
        """
        body = {
            "phone_number": mpesa_number,
            "amount": _amount(amount),
            "narration": narration,
            "callback_url": self.settings.payout_callback_url,
            "channel": "MPESA",
            "currency": self.settings.currency,
        }

        data = await self._request("POST", f"{self.settings.payd_payout_base_url}/withdrawal", json=body)
        reference = self._extract_reference(data, "correlator_id", "transaction_reference", "reference")
        if not reference:
            logger.warning(f"Payd accepted payout to {mpesa_number} without a correlator_id: {data}")
            return None

        logger.info(f"Payd payout accepted for {mpesa_number} (correlator_id={reference})")
        return reference

    async def query_payout_status(self, reference: str) -> ProviderResult:
        # Payd v2 payouts only report through the callback
        raise StatusQueryUnsupported(f"Payd has no payout status query (reference={reference})")

    @staticmethod
    def _extract_reference(data: Dict[str, Any], *keys: str) -> Optional[str]:
        for source in (data, unwrap(data)):
            for key in keys:
                if source.get(key):
                    return str(source[key])
        return None

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.provider_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.provider_backoff_seconds,
                max=self.settings.provider_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(ProviderTransportError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"Retrying Payd {method} {url} "
                        f"(attempt {attempt.retry_state.attempt_number}/{self.settings.provider_max_attempts})"
                    )
                return await self._send(method, url, **kwargs)

    async def _send(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.http_client.request(method, url, auth=self.auth, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTransportError(f"Payd timed out: {method} {url}", code="timeout") from e
        except httpx.TransportError as e:
            raise ProviderTransportError(f"Payd unreachable: {e}", code="transport") from e

        if response.status_code >= 500:
            raise ProviderTransportError(
                f"Payd returned {response.status_code} for {method} {url}",
                code=f"http_{response.status_code}",
            )

        try:
            data = response.json()
        except ValueError:
            data = {"message": response.text}

        if response.status_code >= 400:
            message = response.text
            if isinstance(data, dict):
                message = data.get("message") or data.get("error") or message
            raise ProviderRejectedError(
                f"Payd rejected {method} {url} ({response.status_code}): {message}",
                code=f"http_{response.status_code}",
            )

        if not isinstance(data, dict):
            raise ProviderRejectedError(f"Unexpected Payd response: {data!r}", code="bad_response")

        if data.get("success") is False or str(data.get("status", "")).lower() == "error":
            raise ProviderRejectedError(
                f"Payd refused {method} {url}: {data.get('message') or data}",
                code="refused",
            )

        return data
