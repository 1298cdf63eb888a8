"""
Query Expander
Asks a completion model for paraphrases of the query before retrieval fan-out
"""
import asyncio
import re
from typing import List, Dict, Any, Optional
import logging

from hybrid_retrieval.completion import BaseLLMClient, CompletionConfig
from llm_services.prompt_templates import PromptTemplateLibrary, PromptType

logger = logging.getLogger(__name__)

_LIST_PREFIX = re.compile(r"^\s*(?:[-*•]+|\d+[.)]|\(\d+\))\s*")


def parse_variants(completion: str) -> List[str]:
    """Split a completion into one variant per non-empty line, stripping list markers and quotes"""
    variants = []
    for line in completion.splitlines():
        cleaned = _LIST_PREFIX.sub("", line).strip().strip('"').strip("'").strip()
        if cleaned:
            variants.append(cleaned)
    return variants


class QueryExpander:
    """
    LLM-backed query expansion

    ``expand`` never raises for backend problems: any failure or timeout
    degrades to the original query alone and is logged.
    """

    def __init__(
        self,
        client: BaseLLMClient,
        timeout_seconds: float = 1.0,
        completion_config: Optional[CompletionConfig] = None
    ):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.template = PromptTemplateLibrary.get_template(PromptType.QUERY_EXPANSION)
        # Template settings apply unless the caller passes its own config
        self.completion_config = completion_config or CompletionConfig(
            max_tokens=self.template.max_tokens,
            temperature=self.template.temperature
        )

        self._stats = {
            "total_expansions": 0,
            "failed_expansions": 0,
            "variants_generated": 0
        }

    async def expand(
        self,
        query_text: str,
        n: int,
        timeout_seconds: Optional[float] = None
    ) -> List[str]:
        """
        Produce up to ``n`` paraphrases of the query

        Args:
            query_text: Original query
            n: Number of paraphrases to request
            timeout_seconds: Override for the call timeout

        Returns:
            The original query first, followed by at most ``n`` distinct variants
        """
        self._stats["total_expansions"] += 1
        if n <= 0:
            return [query_text]

        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        messages = self.template.to_messages(query=query_text, n=n)

        try:
            result = await asyncio.wait_for(
                self.client.complete(messages, self.completion_config),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            self._stats["failed_expansions"] += 1
            logger.warning(f"Query expansion timed out after {timeout}s, using original query only")
            return [query_text]
        except Exception as e:
            self._stats["failed_expansions"] += 1
            logger.warning(f"Query expansion failed ({e}), using original query only")
            return [query_text]

        variants = [query_text]
        seen = {query_text.strip().lower()}
        for candidate in parse_variants(result.text):
            key = candidate.lower()
            if key in seen:
                continue
            seen.add(key)
            variants.append(candidate)
            if len(variants) > n:
                break

        self._stats["variants_generated"] += len(variants) - 1
        logger.info(f"Query expansion produced {len(variants) - 1} variants for '{query_text[:50]}'")
        return variants

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
