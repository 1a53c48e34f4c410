"""Text-completion backend for a local llama.cpp-compatible server."""

import asyncio
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import AsyncIterator

from .report import AgentError

logger = logging.getLogger(__name__)

STOP_SEQUENCES = ["User:", "\nUser:", "Human:", "\nHuman:"]
HEALTH_TIMEOUT = 5


@dataclass
class Chunk:
    text: str
    done: bool = False
    finish_reason: str | None = None


class LlamaBackend:
    """Streams completions from an OpenAI-compatible ``/v1/completions`` endpoint."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8080",
        model: str = "local",
        *,
        temperature: float = 0.7,
        top_k: int = 40,
        top_p: float = 0.9,
        n_predict: int = 2048,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.top_k = top_k
        self.top_p = top_p
        self.n_predict = n_predict

    def _completion_kwargs(self, prompt: str, stream: bool) -> dict:
        return dict(
            model=f"text-completion-openai/{self.model}",
            prompt=prompt,
            api_base=f"{self.base_url}/v1",
            api_key="llama.cpp",
            max_tokens=self.n_predict,
            temperature=self.temperature,
            top_p=self.top_p,
            stop=STOP_SEQUENCES,
            extra_body={"top_k": self.top_k},
            stream=stream,
        )

    async def stream(self, prompt: str) -> AsyncIterator[Chunk]:
        """Yield text chunks as they arrive; the last chunk has ``done=True``."""
        import litellm

        litellm.suppress_debug_info = True

        finish_reason = None
        try:
            response = await litellm.atext_completion(
                **self._completion_kwargs(prompt, stream=True)
            )
            async for part in response:
                if not part.choices:
                    continue
                choice = part.choices[0]
                finish_reason = getattr(choice, "finish_reason", None) or finish_reason
                text = getattr(choice, "text", None) or ""
                if text:
                    yield Chunk(text)
        except AgentError:
            raise
        except Exception as e:
            raise AgentError(f"generation failed: {e}") from e
        yield Chunk("", done=True, finish_reason=finish_reason or "stop")

    async def complete(self, prompt: str) -> str:
        """Return the whole completion for *prompt* at once."""
        import litellm

        litellm.suppress_debug_info = True

        try:
            response = await litellm.atext_completion(
                **self._completion_kwargs(prompt, stream=False)
            )
        except Exception as e:
            raise AgentError(f"generation failed: {e}") from e
        if not response.choices:
            return ""
        return response.choices[0].text or ""

    async def health_check(self) -> bool:
        """Return True if the server answers ``GET /health`` with a 2xx status."""
        url = f"{self.base_url}/health"

        def _probe() -> bool:
            try:
                with urllib.request.urlopen(url, timeout=HEALTH_TIMEOUT) as resp:
                    return 200 <= resp.status < 300
            except (urllib.error.URLError, OSError) as e:
                logger.debug("health check against %s failed: %s", url, e)
                return False

        return await asyncio.to_thread(_probe)
