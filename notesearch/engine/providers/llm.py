"""Language-model capability used by semantic scoring.

The engine treats every call here as unreliable. Discovery returns
``None`` when no model is available rather than raising, so callers branch
on it explicitly.
"""

import json
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, runtime_checkable

import httpx
from loguru import logger

from ..cancellation import CancellationToken, NONE


class ModelRequestError(Exception):
    """The model endpoint answered with an error."""


@dataclass(frozen=True)
class ModelHandle:
    vendor: str
    family: str
    name: str


@runtime_checkable
class ModelProvider(Protocol):

    async def try_acquire(self, vendor: str, family: str) -> Optional[ModelHandle]:
        ...

    def send_prompt(
        self,
        handle: ModelHandle,
        text: str,
        cancellation: CancellationToken = NONE,
    ) -> AsyncIterator[str]:
        """Stream the model's reply as text fragments."""
        ...


class OllamaModelProvider:
    """Talks to a local Ollama server over its HTTP API."""

    vendor = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        timeout_s: float = 30.0,
        temperature: float = 0.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.temperature = temperature
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s)

    @classmethod
    def from_config(cls, llm_config) -> "OllamaModelProvider":
        return cls(
            base_url=llm_config.base_url,
            timeout_s=llm_config.timeout_s,
            temperature=llm_config.temperature,
        )

    async def try_acquire(self, vendor: str, family: str) -> Optional[ModelHandle]:
        if vendor != self.vendor:
            logger.debug(f"Unsupported model vendor: {vendor}")
            return None

        try:
            response = await self._client.get("/api/tags")
            response.raise_for_status()
            models = response.json().get("models", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Model discovery failed at {self.base_url}: {e}")
            return None

        for model in models:
            name = model.get("name", "")
            if name.startswith(family):
                return ModelHandle(vendor=vendor, family=family, name=name)

        logger.info(f"No {family} model installed on {self.base_url}")
        return None

    async def send_prompt(
        self,
        handle: ModelHandle,
        text: str,
        cancellation: CancellationToken = NONE,
    ) -> AsyncIterator[str]:
        payload = {
            "model": handle.name,
            "prompt": text,
            "stream": True,
            "options": {"temperature": self.temperature},
        }
        async with self._client.stream("POST", "/api/generate", json=payload) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if cancellation.is_cancelled:
                    break
                if not line.strip():
                    continue
                chunk = json.loads(line)
                if chunk.get("error"):
                    raise ModelRequestError(chunk["error"])
                yield chunk.get("response", "")
                if chunk.get("done"):
                    break

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "OllamaModelProvider":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
