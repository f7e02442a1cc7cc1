"""Price provider protocol and shared HTTP plumbing."""
import asyncio
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

import aiohttp

from coinagent.core.errors import ProviderUnavailable
from coinagent.models import Quote, ProviderFailure

logger = logging.getLogger(__name__)


@runtime_checkable
class PriceProvider(Protocol):
    """Protocol for spot price sources."""

    provider_id: str

    async def fetch_spot_price(self, ticker: str) -> Quote | ProviderFailure:
        """Fetch the USD spot price. Never raises; failures are returned."""
        ...


class HTTPPriceProvider:
    """Base class for JSON-over-HTTP price providers.

    Subclasses implement ``_fetch_price`` and may raise ProviderUnavailable or
    a parsing error from it; ``fetch_spot_price`` turns either into a
    ProviderFailure.
    """

    provider_id = "http"

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        session: aiohttp.ClientSession | None = None,
    ):
        """Initialize provider.

        Args:
            base_url: API root, without trailing slash
            timeout: Per-call timeout in seconds
            session: Shared client session. A short-lived session is opened per
                call when omitted.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET a JSON document.

        Raises:
            ProviderUnavailable: On timeout, transport error, non-200 status or invalid JSON
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        logger.debug(
            "STEP: Provider request",
            extra={
                "extra_data": {
                    "action": "provider_request",
                    "provider": self.provider_id,
                    "url": url,
                    "params": params,
                }
            },
        )

        try:
            if self._session is not None:
                return await self._request(self._session, url, params, timeout)
            async with aiohttp.ClientSession() as session:
                return await self._request(session, url, params, timeout)
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(self.provider_id, f"timeout after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise ProviderUnavailable(self.provider_id, f"{type(e).__name__}: {e}") from e

    async def _request(
        self,
        session: aiohttp.ClientSession,
        url: str,
        params: dict[str, Any] | None,
        timeout: aiohttp.ClientTimeout,
    ) -> Any:
        async with session.get(url, params=params, timeout=timeout) as response:
            if response.status != 200:
                raise ProviderUnavailable(self.provider_id, f"HTTP {response.status}")
            try:
                return await response.json(content_type=None)
            except (json.JSONDecodeError, ValueError) as e:
                raise ProviderUnavailable(self.provider_id, "invalid JSON response") from e

    async def _fetch_price(self, ticker: str) -> Decimal:
        raise NotImplementedError

    async def fetch_spot_price(self, ticker: str) -> Quote | ProviderFailure:
        """Fetch the USD spot price for a ticker.

        Returns:
            Quote on success, ProviderFailure otherwise
        """
        ticker = ticker.upper()
        try:
            price = await self._fetch_price(ticker)
        except ProviderUnavailable as e:
            return self._failure(ticker, e.reason)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            return self._failure(ticker, f"malformed response: {type(e).__name__}: {e}")

        logger.debug(f"{self.provider_id} quote {ticker}: {price}")
        return Quote(provider_id=self.provider_id, price=price, fetched_at=datetime.now())

    def _failure(self, ticker: str, reason: str) -> ProviderFailure:
        logger.debug(f"{self.provider_id} failed for {ticker}: {reason}")
        return ProviderFailure(provider_id=self.provider_id, reason=reason, fetched_at=datetime.now())
