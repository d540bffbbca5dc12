"""
Async HTTP helpers for fetching documents from external sources.

Every call carries a bounded total timeout. Transport errors, timeouts and
non-200 responses are raised as :class:`NetworkFailure` so callers can treat
them like any other per-item verification failure.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from .exceptions import NetworkFailure

DEFAULT_TIMEOUT_SECONDS = 10.0


class HttpClient:
    """Thin aiohttp wrapper with consistent timeouts, errors and logging."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS, logger=None) -> None:
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self.session: aiohttp.ClientSession | None = None

    async def initialize(self) -> None:
        """Create the shared HTTP session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> HttpClient:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def get_text(self, url: str, headers: dict[str, str] | None = None) -> str:
        """GET ``url`` and return the body as text."""
        if self.session is None:
            await self.initialize()

        self.logger.debug(f"Making GET request to {url}")
        try:
            async with self.session.get(url, headers=headers) as response:
                if response.status != 200:
                    raise NetworkFailure(f"GET {url} returned HTTP {response.status}")
                return await response.text()
        except asyncio.TimeoutError as e:
            raise NetworkFailure(f"GET {url} timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise NetworkFailure(f"GET {url} failed: {e}") from e

    async def get_json(self, url: str, headers: dict[str, str] | None = None) -> Any:
        """GET ``url`` and decode the body as JSON."""
        if self.session is None:
            await self.initialize()

        self.logger.debug(f"Making GET request to {url}")
        try:
            async with self.session.get(url, headers=headers) as response:
                if response.status != 200:
                    raise NetworkFailure(f"GET {url} returned HTTP {response.status}")
                return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise NetworkFailure(f"GET {url} timed out after {self.timeout}s") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise NetworkFailure(f"GET {url} failed: {e}") from e

    async def post_json(self, url: str, payload: dict[str, Any]) -> Any:
        """POST a JSON body to ``url`` and decode the JSON response."""
        if self.session is None:
            await self.initialize()

        self.logger.debug(f"Making POST request to {url}")
        try:
            async with self.session.post(
                url, json=payload, headers={"Content-Type": "application/json"}
            ) as response:
                if response.status != 200:
                    raise NetworkFailure(f"POST {url} returned HTTP {response.status}")
                return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise NetworkFailure(f"POST {url} timed out after {self.timeout}s") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise NetworkFailure(f"POST {url} failed: {e}") from e
