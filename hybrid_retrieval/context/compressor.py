"""
Context Compressor
Extracts the query-relevant span of each hit with one completion call per hit
"""
import asyncio
from dataclasses import replace
from typing import List, Dict, Any, Optional
import logging

from hybrid_retrieval.models import CompressedResult, SearchHit
from hybrid_retrieval.completion import BaseLLMClient, CompletionConfig
from llm_services.prompt_templates import IRRELEVANT_MARKER, PromptTemplateLibrary, PromptType

logger = logging.getLogger(__name__)


class ContextCompressor:
    """
    LLM-backed context compression

    A hit the model marks irrelevant is dropped. Any per-hit failure
    (timeout, backend error, empty output) keeps the original text.
    """

    def __init__(
        self,
        client: BaseLLMClient,
        concurrency: int = 8,
        timeout_seconds: float = 0.5,
        completion_config: Optional[CompletionConfig] = None
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.client = client
        self.concurrency = concurrency
        self.timeout_seconds = timeout_seconds
        self.template = PromptTemplateLibrary.get_template(PromptType.CONTEXT_COMPRESSION)
        self.completion_config = completion_config or CompletionConfig(
            max_tokens=self.template.max_tokens,
            temperature=self.template.temperature
        )

        self._stats = {
            "total_calls": 0,
            "compressed": 0,
            "dropped_irrelevant": 0,
            "failed_calls": 0
        }

    @staticmethod
    def is_irrelevant(text: str) -> bool:
        return text.strip().strip(".").strip().upper() == IRRELEVANT_MARKER

    async def compress(
        self,
        query: str,
        hit: SearchHit,
        timeout_seconds: Optional[float] = None
    ) -> Optional[CompressedResult]:
        """
        Compress one hit

        Returns:
            CompressedResult carrying the hit's id, or None when the model
            judged the hit irrelevant
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        messages = self.template.to_messages(query=query, passage=hit.text, marker=IRRELEVANT_MARKER)
        self._stats["total_calls"] += 1

        try:
            result = await asyncio.wait_for(
                self.client.complete(messages, self.completion_config),
                timeout=timeout
            )
            extracted = (result.text or "").strip()
        except asyncio.TimeoutError:
            self._stats["failed_calls"] += 1
            logger.warning(f"Compression of {hit.id} timed out after {timeout}s, keeping original text")
            return CompressedResult(source_id=hit.id, text=hit.text, hit=hit, compressed=False)
        except Exception as e:
            self._stats["failed_calls"] += 1
            logger.warning(f"Compression of {hit.id} failed ({e}), keeping original text")
            return CompressedResult(source_id=hit.id, text=hit.text, hit=hit, compressed=False)

        if self.is_irrelevant(extracted):
            self._stats["dropped_irrelevant"] += 1
            logger.debug(f"Compression marked {hit.id} irrelevant")
            return None

        if not extracted:
            self._stats["failed_calls"] += 1
            logger.warning(f"Compression of {hit.id} returned empty text, keeping original text")
            return CompressedResult(source_id=hit.id, text=hit.text, hit=hit, compressed=False)

        self._stats["compressed"] += 1
        return CompressedResult(source_id=hit.id, text=extracted, hit=hit, compressed=True)

    async def compress_hits(
        self,
        query: str,
        hits: List[SearchHit],
        timeout_seconds: Optional[float] = None,
        concurrency: Optional[int] = None
    ) -> List[SearchHit]:
        """
        Compress hits with bounded concurrency

        Output keeps the input order minus hits marked irrelevant.
        """
        if not hits:
            return []

        semaphore = asyncio.Semaphore(concurrency or self.concurrency)

        async def bounded(hit: SearchHit) -> Optional[CompressedResult]:
            async with semaphore:
                return await self.compress(query, hit, timeout_seconds)

        compressed = await asyncio.gather(*(bounded(hit) for hit in hits))

        output = []
        for result in compressed:
            if result is None:
                continue
            output.append(replace(result.hit, text=result.text, compressed=result.compressed))

        logger.info(
            f"Compression: {len(hits)} → {len(output)} hits "
            f"({len(hits) - len(output)} dropped as irrelevant)"
        )
        return output

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
