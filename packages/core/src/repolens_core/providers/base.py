"""Base model client implementing the Template Method pattern.

Every provider shares the same calling algorithm:
    complete() -> build ModelRequest
               -> _call_with_retry() -> _call_api()   <- only this differs per provider

Subclasses implement two things only:
  - __init__: validate and store the SDK client
  - _call_api: translate one ModelRequest into an SDK call and the SDK
    response back into typed blocks

Retry, backoff and logging live here so they are defined once and inherited
consistently by every provider.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from repolens_core.errors import ModelAPIError, RunCancelledError
from repolens_core.providers.types import Message, ModelRequest, ModelResponse

logger = logging.getLogger(__name__)

_MAX_RETRIES = 3


class BaseModelClient(ABC):
    MAX_RETRIES: int = _MAX_RETRIES
    RETRY_BASE_DELAY: float = 1.0
    MODEL: str = ""

    def __init__(self, model: str | None = None):
        self.model = model or self.MODEL

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def complete(
        self,
        system: str,
        messages: list[Message],
        tools: list[dict],
        force_tool: bool = False,
        thinking: bool = False,
    ) -> ModelResponse:
        """Send one turn and return the typed response.

        ``force_tool`` makes tool use mandatory for this turn. ``thinking``
        requests a reasoning trace; providers that cannot combine it with a
        forced tool choice ignore it when ``force_tool`` is set.
        """
        request = ModelRequest(
            system=system,
            messages=messages,
            tools=tools,
            force_tool=force_tool,
            thinking=thinking and not force_tool,
        )
        return await self._call_with_retry(request)

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                                 #
    # ------------------------------------------------------------------ #

    @abstractmethod
    async def _call_api(self, request: ModelRequest) -> ModelResponse:
        """Make a single API call and return the typed response.

        This is the only method subclasses must implement. It should raise
        on failure; _call_with_retry handles retries and logging.
        """

    # ------------------------------------------------------------------ #
    # Shared implementations                                               #
    # ------------------------------------------------------------------ #

    async def _call_with_retry(self, request: ModelRequest) -> ModelResponse:
        """Retry _call_api up to MAX_RETRIES times with exponential backoff.

        Raises ModelAPIError once every attempt has failed.
        """
        for attempt in range(self.MAX_RETRIES):
            try:
                return await self._call_api(request)
            except (RunCancelledError, asyncio.CancelledError):
                raise
            except Exception as e:
                if attempt == self.MAX_RETRIES - 1:
                    logger.error(
                        "%s API failed after %d attempts: %s",
                        self.__class__.__name__,
                        self.MAX_RETRIES,
                        e,
                    )
                    raise ModelAPIError(f"{self.__class__.__name__}: {e}") from e
                delay = self.RETRY_BASE_DELAY * 2**attempt
                logger.warning(
                    "%s API error (attempt %d/%d): %s. Retrying in %.0fs...",
                    self.__class__.__name__,
                    attempt + 1,
                    self.MAX_RETRIES,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
        raise ModelAPIError(f"{self.__class__.__name__}: no attempts made")
