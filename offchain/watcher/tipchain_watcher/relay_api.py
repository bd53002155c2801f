"""
Client for the Relay bridging API.

The API is treated as best effort: a missing or non-2xx answer is reported
as "no record", and transport failures raise RelayApiError so callers can
fall back to their own estimates.
"""

import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from .models import RelayQuote, RelayStatus

logger = structlog.get_logger()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Fallback quote: 95% delivered, 5% fees, five minutes
FALLBACK_OUTPUT_BPS = 9500
FALLBACK_ESTIMATED_TIME = 300

_VENDOR_STATUS = {
    "pending": RelayStatus.PENDING,
    "processing": RelayStatus.RELAYING,
    "bridging": RelayStatus.RELAYING,
    "completed": RelayStatus.COMPLETED,
    "success": RelayStatus.COMPLETED,
    "failed": RelayStatus.FAILED,
    "error": RelayStatus.FAILED,
}


class RelayApiError(Exception):
    """Bridging API could not be reached."""

    def __init__(self, message: str, url: Optional[str] = None):
        self.message = message
        self.url = url
        super().__init__(message)


def map_vendor_status(value: Optional[str]) -> RelayStatus:
    """Map a vendor status string onto RelayStatus; unknown values are 'initiated'."""
    if not value:
        return RelayStatus.INITIATED
    return _VENDOR_STATUS.get(str(value).lower(), RelayStatus.INITIATED)


@dataclass
class QuoteRequest:
    """Parameters for a relay quote."""

    from_chain_id: int
    from_token: str
    to_chain_id: int
    to_token: str
    amount: str  # base units
    user: Optional[str] = None
    recipient: Optional[str] = None


def _api_token(token: str) -> str:
    return ZERO_ADDRESS if token == "native" else token


class RelayApiClient:
    """Async client for the Relay bridging API."""

    def __init__(
        self,
        base_url: str = "https://api.relay.link",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": "tipchain-watcher"},
        )

    async def get_status(self, relay_id: str) -> Optional[dict[str, Any]]:
        """
        Fetch the vendor status record for a relay.

        Returns None when the API has no usable record.

        Raises:
            RelayApiError: on transport failure
        """
        url = f"{self.base_url}/status/{relay_id}"
        try:
            response = await self.client.get(url)
        except httpx.HTTPError as e:
            raise RelayApiError(f"Relay API request failed: {e}", url=url) from e

        if not response.is_success:
            logger.debug("relay_api_no_record", relay_id=relay_id, status_code=response.status_code)
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning("relay_api_invalid_json", relay_id=relay_id)
            return None

        if not isinstance(data, dict) or "status" not in data:
            return None
        return data

    async def get_quote(self, request: QuoteRequest) -> RelayQuote:
        """
        Quote a relay into the destination chain.

        Falls back to a fixed-rate estimate when the API is unavailable.
        """
        payload = {
            "user": request.user or ZERO_ADDRESS,
            "recipient": request.recipient,
            "originChainId": request.from_chain_id,
            "destinationChainId": request.to_chain_id,
            "originCurrency": _api_token(request.from_token),
            "destinationCurrency": _api_token(request.to_token),
            "amount": request.amount,
            "tradeType": "EXACT_INPUT",
        }
        url = f"{self.base_url}/quote"

        try:
            response = await self.client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("Invalid API response format")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("relay_quote_fallback", error=str(e), from_chain=request.from_chain_id)
            return self._fallback_quote(request)

        fees = data.get("fees", data.get("fee", 0))
        return RelayQuote(
            id=str(data.get("id") or f"quote-{int(time.time() * 1000)}"),
            from_chain_id=request.from_chain_id,
            to_chain_id=request.to_chain_id,
            from_token=request.from_token,
            to_token=request.to_token,
            amount=request.amount,
            estimated_output=str(data.get("destinationAmount") or data.get("outputAmount") or "0"),
            fees=str(fees),
            estimated_time=int(data.get("estimatedTime") or data.get("duration") or FALLBACK_ESTIMATED_TIME),
        )

    def _fallback_quote(self, request: QuoteRequest) -> RelayQuote:
        amount = int(request.amount)
        output = amount * FALLBACK_OUTPUT_BPS // 10_000
        return RelayQuote(
            id=f"fallback-quote-{int(time.time() * 1000)}",
            from_chain_id=request.from_chain_id,
            to_chain_id=request.to_chain_id,
            from_token=request.from_token,
            to_token=request.to_token,
            amount=request.amount,
            estimated_output=str(output),
            fees=str(amount - output),
            estimated_time=FALLBACK_ESTIMATED_TIME,
            is_fallback=True,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
