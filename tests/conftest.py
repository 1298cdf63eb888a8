"""
Shared fakes for pipeline tests

Backends are replaced by in-process doubles so that pipeline behaviour can
be asserted independently of model output and network conditions.
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from hybrid_retrieval.completion import BaseLLMClient, CompletionConfig, CompletionResult
from hybrid_retrieval.embeddings.embedder import BaseEmbedder
from hybrid_retrieval.fusion.rrf import reciprocal_rank_fusion
from hybrid_retrieval.models import Candidate, RankedList, RetrievalMethod, SearchHit
from hybrid_retrieval.reranking.cross_encoder import RerankingService
from hybrid_retrieval.search.retrievers import BaseRetriever, IndexHit
from hybrid_retrieval.errors import BackendUnavailable


def make_hit(
    doc_id: str,
    rank: int = 0,
    embedding: Optional[Sequence[float]] = None,
    parent_id: Optional[str] = None,
    text: Optional[str] = None
) -> IndexHit:
    """Index hit with a score that decreases with rank"""
    return IndexHit(
        id=doc_id,
        score=1.0 / (rank + 1),
        text=text if text is not None else f"text of {doc_id}",
        embedding=list(embedding) if embedding is not None else None,
        parent_id=parent_id
    )


def make_hits(ids: Sequence[str], embeddings: Optional[Dict[str, Sequence[float]]] = None) -> List[IndexHit]:
    embeddings = embeddings or {}
    return [make_hit(doc_id, rank, embeddings.get(doc_id)) for rank, doc_id in enumerate(ids)]


class StaticRetriever(BaseRetriever):
    """Retriever over a fixed hit list, with optional latency and failures"""

    def __init__(
        self,
        method: RetrievalMethod,
        hits: Optional[List[IndexHit]] = None,
        name: Optional[str] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        fail_times: int = 0,
        per_query: Optional[Dict[str, List[IndexHit]]] = None
    ):
        self.method = method
        self.name = name or method.value
        self.hits = hits or []
        self.delay = delay
        self.error = error
        self.fail_times = fail_times
        self.per_query = per_query
        self.calls: List[Tuple[str, int, Optional[Dict[str, Any]]]] = []

    async def _search(self, query_text, top_k, filters):
        self.calls.append((query_text, top_k, filters))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise BackendUnavailable(self.name, "temporarily unavailable")
        if self.error is not None:
            raise self.error
        if self.per_query is not None:
            return list(self.per_query.get(query_text, []))
        return list(self.hits)


class FakeEmbedder(BaseEmbedder):
    """Looks vectors up by text; unknown texts get the default vector"""

    def __init__(
        self,
        vectors: Optional[Dict[str, Sequence[float]]] = None,
        default: Sequence[float] = (1.0, 0.0),
        error: Optional[Exception] = None,
        document_delay: float = 0.0
    ):
        self.vectors = dict(vectors or {})
        self.default = list(default)
        self.error = error
        self.document_delay = document_delay
        self.query_calls: List[str] = []
        self.document_calls: List[List[str]] = []

    async def embed_query(self, text: str) -> List[float]:
        self.query_calls.append(text)
        if self.error is not None:
            raise self.error
        return list(self.vectors.get(text, self.default))

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        self.document_calls.append(list(texts))
        if self.document_delay:
            await asyncio.sleep(self.document_delay)
        if self.error is not None:
            raise self.error
        return [list(self.vectors.get(t, self.default)) for t in texts]


Responder = Union[str, Callable[[List[Dict[str, str]]], str]]


class FakeLLMClient(BaseLLMClient):
    """Completion client returning canned text, tracking concurrency"""

    name = "fake-llm"

    def __init__(self, responder: Responder = "", delay: float = 0.0, error: Optional[Exception] = None):
        super().__init__()
        self.responder = responder
        self.delay = delay
        self.error = error
        self.calls: List[List[Dict[str, str]]] = []
        self.configs: List[Optional[CompletionConfig]] = []
        self.active = 0
        self.max_active = 0

    async def complete(
        self,
        messages: List[Dict[str, str]],
        config: Optional[CompletionConfig] = None
    ) -> CompletionResult:
        self.calls.append(messages)
        self.configs.append(config)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                self._record(None)
                raise self.error
            text = self.responder(messages) if callable(self.responder) else self.responder
            result = CompletionResult(text=text, model="fake")
            self._record(result)
            return result
        finally:
            self.active -= 1


class FakeRerankingService(RerankingService):
    """Scores passages from a fixed id -> score table"""

    def __init__(
        self,
        scores: Optional[Dict[str, float]] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        drop_ids: Sequence[str] = ()
    ):
        self.scores = dict(scores or {})
        self.delay = delay
        self.error = error
        self.drop_ids = set(drop_ids)
        self.calls: List[Tuple[str, List[Tuple[str, str]]]] = []

    async def score(self, query: str, passages: List[Tuple[str, str]]) -> List[Tuple[str, float]]:
        self.calls.append((query, list(passages)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [
            (pid, self.scores.get(pid, 0.0))
            for pid, _ in passages
            if pid not in self.drop_ids
        ]


def passage_of(messages: List[Dict[str, str]]) -> str:
    """Passage section of a compression prompt"""
    content = messages[-1]["content"]
    return content.split("Passage:\n", 1)[1].split("\n\nInstructions:", 1)[0]


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def semantic_hits():
    return make_hits(["A", "B", "C"], {
        "A": [1.0, 0.0],
        "B": [0.9, 0.1],
        "C": [0.0, 1.0],
    })


@pytest.fixture
def keyword_hits():
    return make_hits(["B", "D", "A"])


def make_search_hits(
    ids: Sequence[str],
    parents: Optional[Dict[str, str]] = None,
    texts: Optional[Dict[str, str]] = None
) -> List[SearchHit]:
    """Search hits in the given order, as they leave diversity selection"""
    parents = parents or {}
    texts = texts or {}
    ranked = RankedList(
        query_text="what is lazy loading",
        method=RetrievalMethod.SEMANTIC,
        candidates=tuple(
            Candidate(
                id=doc_id,
                text=texts.get(doc_id, f"text of {doc_id}"),
                method=RetrievalMethod.SEMANTIC,
                score=1.0,
                parent_id=parents.get(doc_id)
            )
            for doc_id in ids
        )
    )
    return [SearchHit.from_fused(result) for result in reciprocal_rank_fusion([ranked])]
