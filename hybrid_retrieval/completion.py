"""
Completion Service Interface
What query expansion and context compression need from an LLM backend
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List


@dataclass
class CompletionConfig:
    """
    Configuration for one completion call

    Attributes:
        model_name: Model name for the backend (client default if None)
        max_tokens: Maximum tokens to generate
        temperature: Sampling temperature (0.0 to 1.0)
        top_p: Nucleus sampling parameter
    """
    model_name: Optional[str] = None
    max_tokens: int = 256
    temperature: float = 0.3
    top_p: float = 0.9

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_name": self.model_name,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
        }


@dataclass
class CompletionResult:
    """Text returned by one completion call"""
    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    completion_time_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class BaseLLMClient(ABC):
    """
    Abstract base class for completion clients

    Implementations raise BackendUnavailable for timeouts, connection
    problems and rate limits, and BackendError for unusable responses.
    """

    name = "llm"

    def __init__(self):
        self._stats = {
            "total_calls": 0,
            "failed_calls": 0,
            "total_tokens": 0,
            "average_time_ms": 0.0
        }

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, str]],
        config: Optional[CompletionConfig] = None
    ) -> CompletionResult:
        """
        Run one chat completion

        Args:
            messages: List of message dicts with 'role' and 'content'
            config: Completion configuration (client default if None)

        Returns:
            CompletionResult
        """

    def _record(self, result: Optional[CompletionResult]) -> None:
        self._stats["total_calls"] += 1
        if result is None:
            self._stats["failed_calls"] += 1
            return

        self._stats["total_tokens"] += result.total_tokens
        n = self._stats["total_calls"] - self._stats["failed_calls"]
        old_avg = self._stats["average_time_ms"]
        self._stats["average_time_ms"] = old_avg + (result.completion_time_ms - old_avg) / n

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
