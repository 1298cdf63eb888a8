"""
LLM Completion Clients
OpenAI and Ollama backends for query expansion and context compression
"""
import asyncio
import logging
import time
from typing import Optional, Dict, List
from enum import Enum
import os

from hybrid_retrieval.completion import BaseLLMClient, CompletionConfig, CompletionResult
from hybrid_retrieval.errors import BackendError, BackendUnavailable

logger = logging.getLogger(__name__)


class LLMBackend(Enum):
    """Supported LLM backends"""
    OPENAI = "openai"
    OLLAMA = "ollama"


class OpenAIClient(BaseLLMClient):
    """OpenAI chat completion client"""

    name = "openai"

    def __init__(self, api_key: Optional[str] = None, config: Optional[CompletionConfig] = None):
        """
        Initialize OpenAI client

        Args:
            api_key: OpenAI API key (uses env var if None)
            config: Default completion configuration
        """
        super().__init__()
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError("OpenAI API key not found. Set OPENAI_API_KEY environment variable.")

        import openai
        self._openai = openai
        self.client = openai.AsyncOpenAI(api_key=self.api_key)
        self.config = config or CompletionConfig()
        self.default_model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        logger.info("OpenAI client initialized")

    async def complete(
        self,
        messages: List[Dict[str, str]],
        config: Optional[CompletionConfig] = None
    ) -> CompletionResult:
        config = config or self.config
        model = config.model_name or self.default_model
        openai = self._openai
        start_time = time.time()

        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=config.max_tokens,
                temperature=config.temperature,
                top_p=config.top_p,
            )
        except (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError) as e:
            self._record(None)
            raise BackendUnavailable(self.name, str(e)) from e
        except openai.APIError as e:
            self._record(None)
            raise BackendError(self.name, str(e)) from e

        if not response.choices or response.choices[0].message.content is None:
            self._record(None)
            raise BackendError(self.name, "completion returned no content")

        usage = response.usage
        result = CompletionResult(
            text=response.choices[0].message.content,
            model=model,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            completion_time_ms=(time.time() - start_time) * 1000,
            metadata={"backend": "openai", "response_id": response.id}
        )
        self._record(result)
        logger.debug(
            f"OpenAI completion: {result.total_tokens} tokens in {result.completion_time_ms:.0f}ms"
        )
        return result


class OllamaClient(BaseLLMClient):
    """Ollama chat client for local models"""

    name = "ollama"

    def __init__(self, base_url: Optional[str] = None, config: Optional[CompletionConfig] = None):
        """
        Initialize Ollama client

        Args:
            base_url: Ollama API base URL (uses env var if None)
            config: Default completion configuration
        """
        super().__init__()
        self.base_url = base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")

        import ollama
        self._ollama = ollama
        self.client = ollama.AsyncClient(host=self.base_url)
        self.config = config or CompletionConfig()
        self.default_model = os.getenv("OLLAMA_MODEL", "llama3")
        logger.info(f"Ollama client initialized at {self.base_url}")

    async def complete(
        self,
        messages: List[Dict[str, str]],
        config: Optional[CompletionConfig] = None
    ) -> CompletionResult:
        config = config or self.config
        model = config.model_name or self.default_model
        start_time = time.time()

        try:
            response = await self.client.chat(
                model=model,
                messages=messages,
                options={
                    "num_predict": config.max_tokens,
                    "temperature": config.temperature,
                    "top_p": config.top_p,
                },
                stream=False,
            )
        except self._ollama.ResponseError as e:
            self._record(None)
            raise BackendError(self.name, str(e)) from e
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            self._record(None)
            raise BackendUnavailable(self.name, str(e) or type(e).__name__) from e
        except Exception as e:
            # httpx transport errors surface here when the daemon is unreachable
            self._record(None)
            raise BackendUnavailable(self.name, f"{type(e).__name__}: {e}") from e

        message = response.get("message")
        content = message.get("content") if message else None
        if content is None:
            self._record(None)
            raise BackendError(self.name, "chat response had no message content")

        result = CompletionResult(
            text=content,
            model=model,
            prompt_tokens=int(response.get("prompt_eval_count") or 0),
            completion_tokens=int(response.get("eval_count") or 0),
            completion_time_ms=(time.time() - start_time) * 1000,
            metadata={"backend": "ollama", "model_info": response.get("model", "")}
        )
        self._record(result)
        logger.debug(
            f"Ollama completion: {result.total_tokens} tokens in {result.completion_time_ms:.0f}ms"
        )
        return result


def create_client(backend: LLMBackend) -> BaseLLMClient:
    """Create a completion client for the given backend"""
    if backend == LLMBackend.OPENAI:
        return OpenAIClient()
    elif backend == LLMBackend.OLLAMA:
        return OllamaClient()
    raise ValueError(f"Unsupported backend: {backend}")
