"""LLM provider base class with shared retry logic."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

import httpx

from ..types import LLMProviderError

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF = [1.0, 2.0, 4.0]


class BaseProvider(ABC):
    """Abstract base for summarization LLM providers.

    Subclasses fill in the hook methods; ``complete()`` owns the retry loop
    (429 and 5xx are retried with backoff, other statuses fail fast).
    """

    _timeout: float = 60.0

    def __init__(self, model: str, temperature: float = 0.3) -> None:
        self.model = model
        self.temperature = temperature
        self.last_usage: dict = {}

    # -- hook methods subclasses must implement --

    @abstractmethod
    def _provider_name(self) -> str: ...

    @abstractmethod
    def _get_url(self) -> str: ...

    @abstractmethod
    def _get_headers(self) -> dict: ...

    @abstractmethod
    def _build_payload(self, system: str, user: str, max_tokens: int) -> dict: ...

    @abstractmethod
    def _extract_text(self, data: dict) -> str: ...

    # -- shared retry logic --

    def _error(self, message: str, status_code: int | None = None) -> LLMProviderError:
        return LLMProviderError(message, provider=self._provider_name(), status_code=status_code)

    def complete(self, system: str, user: str, max_tokens: int) -> str:
        """Send a completion request with automatic retry on transient errors."""
        url = self._get_url()
        headers = self._get_headers()
        payload = self._build_payload(system, user, max_tokens)

        last_error: LLMProviderError | None = None

        for attempt in range(MAX_RETRIES):
            try:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(url, headers=headers, json=payload)
            except httpx.HTTPError as e:
                last_error = self._error(f"HTTP error: {e}")
            else:
                if response.status_code == 200:
                    data = response.json()
                    self.last_usage = data.get("usage", {})
                    return self._extract_text(data)

                error = self._error(f"HTTP {response.status_code}: {response.text}", response.status_code)
                if response.status_code != 429 and response.status_code < 500:
                    raise error
                last_error = error

            logger.warning(
                "%s request failed (attempt %d/%d): %s",
                self._provider_name(), attempt + 1, MAX_RETRIES, last_error,
            )
            if attempt < MAX_RETRIES - 1:
                time.sleep(RETRY_BACKOFF[attempt])

        raise last_error or self._error("Max retries exceeded")
