"""
Live health probes for models outside the verified catalog set.

The selector only depends on the HealthChecker interface, so tests and
other providers can plug in their own implementation.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

import httpx

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 5.0


class HealthChecker(ABC):
    """Checks whether a model answers on a given API key."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Checker identifier for logging."""
        pass

    @abstractmethod
    async def check(self, api_key: str, model_name: str) -> bool:
        """
        Make one minimal call to the model.

        Returns:
            True if the model answered successfully
        """
        pass

    async def close(self) -> None:
        """Release any held connections."""


class GeminiHealthChecker(HealthChecker):
    """Probes a Gemini model with a one-word generateContent request."""

    DEFAULT_TIMEOUT = httpx.Timeout(
        connect=5.0,
        read=10.0,
        write=5.0,
        pool=5.0,
    )

    def __init__(
        self,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: httpx.Timeout | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout or self.DEFAULT_TIMEOUT
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return "gemini"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def check(self, api_key: str, model_name: str) -> bool:
        client = await self._get_client()
        url = f"{self._base_url}/models/{model_name}:generateContent"
        payload = {"contents": [{"parts": [{"text": "Hello"}]}]}

        try:
            response = await client.post(url, json=payload, headers={"x-goog-api-key": api_key})
        except httpx.HTTPError as e:
            logger.warning(f"Health probe for {model_name} failed: {e}")
            return False

        if response.status_code == 404:
            logger.warning(f"Model {model_name} is not available on this key")
            return False
        if not response.is_success:
            logger.warning(f"Health probe for {model_name} returned {response.status_code}")
            return False
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


async def probe(
    checker: HealthChecker,
    api_key: str,
    model_name: str,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> bool:
    """
    Run a health check with a hard timeout.

    A timeout or any error counts as a failed probe. On timeout the check
    is cancelled, so an abandoned probe never reports back.
    """
    try:
        return await asyncio.wait_for(checker.check(api_key, model_name), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Health probe for {model_name} timed out after {timeout}s ({checker.name})")
        return False
    except Exception as e:
        logger.warning(f"Health probe for {model_name} raised {type(e).__name__}: {e}")
        return False
