"""
Integration Tests for the Hybrid Retrieval Pipeline

All backends are in-process fakes, so these tests exercise orchestration
(fan-out, degradation, stage ordering) rather than model quality.
"""
import asyncio
import time
import pytest
from unittest.mock import AsyncMock, MagicMock

from hybrid_retrieval import (
    HybridRetrievalPipeline,
    OptionalStage,
    Query,
    RetrievalFailedError,
    RetrievalMethod,
    SearchConfig,
    SearchDeadlineExceeded,
)
from hybrid_retrieval.context.compressor import ContextCompressor
from hybrid_retrieval.context.parent_retriever import DocumentExpander, InMemoryParentStore, ParentDocumentStore
from hybrid_retrieval.errors import BackendUnavailable
from hybrid_retrieval.models import ParentDocument
from hybrid_retrieval.query.query_expander import QueryExpander
from hybrid_retrieval.reranking.reranker import Reranker
from hybrid_retrieval.search.retrievers import KeywordRetriever
from hybrid_retrieval.trace import PipelineState

from conftest import (
    FakeEmbedder,
    FakeLLMClient,
    FakeRerankingService,
    StaticRetriever,
    make_hit,
    make_hits,
    passage_of
)


QUERY = "what is lazy loading"
UNIT = [1.0, 0.0]


def semantic(ids, embeddings=None, **kwargs):
    embeddings = embeddings if embeddings is not None else {doc_id: UNIT for doc_id in ids}
    return StaticRetriever(RetrievalMethod.SEMANTIC, make_hits(ids, embeddings), **kwargs)


def keyword(ids, **kwargs):
    return StaticRetriever(RetrievalMethod.KEYWORD, make_hits(ids), **kwargs)


class HangingRetriever(StaticRetriever):
    """Never answers; records whether its call was cancelled"""

    def __init__(self, method):
        super().__init__(method)
        self.cancelled = False

    async def _search(self, query_text, top_k, filters):
        self.calls.append((query_text, top_k, filters))
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return []


class HangingParentStore(ParentDocumentStore):
    """Parent lookups that never complete"""

    async def get(self, parent_id):
        await asyncio.sleep(10)


def fast_config(**overrides):
    values = {
        "retrieval_timeout_seconds": 0.5,
        "retry_delay_seconds": 0.0,
        "mmr_lambda": 1.0,
    }
    values.update(overrides)
    return SearchConfig(**values)


@pytest.fixture
def pipeline():
    return HybridRetrievalPipeline(
        retrievers=[semantic(["A", "B", "C"]), keyword(["B", "D", "A"])],
        embedder=FakeEmbedder(),
        config=fast_config()
    )


class TestBasicSearch:
    """Test the mandatory stages"""

    @pytest.mark.asyncio
    async def test_lazy_loading_example(self, pipeline):
        response = await pipeline.search(QUERY)
        ids = [hit.id for hit in response.hits]

        assert set(ids[:2]) == {"A", "B"}
        assert set(ids[2:]) == {"C", "D"}
        assert response.degraded is False

    @pytest.mark.asyncio
    async def test_provenance_reported(self, pipeline):
        response = await pipeline.search(QUERY)
        hit = next(h for h in response.hits if h.id == "A")

        methods = {(c.method, c.rank) for c in hit.provenance}
        assert methods == {(RetrievalMethod.SEMANTIC, 0), (RetrievalMethod.KEYWORD, 2)}
        assert all(c.query_text == QUERY for c in hit.provenance)

    @pytest.mark.asyncio
    async def test_stages_run(self, pipeline):
        response = await pipeline.search(QUERY)

        assert response.stages_run == ["retrieving", "fusing", "selecting"]
        assert response.trace.state == PipelineState.DONE
        assert response.trace.get_stage(PipelineState.RERANKING).skipped is True

    @pytest.mark.asyncio
    async def test_identical_lists_preserve_order(self):
        ids = [f"doc_{i}" for i in range(10)]
        embeddings = {doc_id: [1.0, 0.1 * i] for i, doc_id in enumerate(ids)}
        pipeline = HybridRetrievalPipeline(
            retrievers=[
                semantic(ids, embeddings),
                StaticRetriever(RetrievalMethod.KEYWORD, make_hits(ids, embeddings)),
            ],
            embedder=FakeEmbedder(),
            config=fast_config(mmr_top_k=10)
        )

        response = await pipeline.search(QUERY)

        assert [hit.id for hit in response.hits] == ids

    @pytest.mark.asyncio
    async def test_no_duplicate_ids(self, pipeline):
        response = await pipeline.search(QUERY)
        ids = [hit.id for hit in response.hits]

        assert len(ids) == len(set(ids))

    @pytest.mark.asyncio
    async def test_mmr_top_k_bounds_results(self, pipeline):
        response = await pipeline.search(QUERY, config=fast_config(mmr_top_k=2))

        assert len(response) == 2

    @pytest.mark.asyncio
    async def test_accepts_query_object(self, pipeline):
        response = await pipeline.search(Query(text=QUERY))

        assert response.query.text == QUERY
        assert response.variants == (QUERY,)

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, pipeline):
        with pytest.raises(ValueError):
            await pipeline.search("   ")

    @pytest.mark.asyncio
    async def test_empty_results_are_a_success(self):
        pipeline = HybridRetrievalPipeline([semantic([]), keyword([])], embedder=FakeEmbedder())

        response = await pipeline.search(QUERY, config=fast_config())

        assert response.hits == []
        assert response.trace.state == PipelineState.DONE

    @pytest.mark.asyncio
    async def test_filters_forwarded(self):
        sem = semantic(["A"])
        kw = keyword(["A"])
        pipeline = HybridRetrievalPipeline([sem, kw], embedder=FakeEmbedder(), config=fast_config())

        await pipeline.search(QUERY, filters={"document_id": "doc_1"})

        assert sem.calls[0][2] == {"document_id": "doc_1"}
        assert kw.calls[0][2] == {"document_id": "doc_1"}

    @pytest.mark.asyncio
    async def test_keyword_candidates_embedded_for_mmr(self):
        embedder = FakeEmbedder(vectors={"text of D": [0.0, 1.0]})
        pipeline = HybridRetrievalPipeline(
            [semantic(["A"]), keyword(["D"])], embedder=embedder, config=fast_config()
        )

        response = await pipeline.search(QUERY)

        assert [hit.id for hit in response.hits] == ["A", "D"]
        assert ["text of D"] in embedder.document_calls

    def test_search_sync(self, pipeline):
        response = pipeline.search_sync(QUERY)

        assert len(response) == 4

    def test_requires_retrievers(self):
        with pytest.raises(ValueError):
            HybridRetrievalPipeline([])

    @pytest.mark.asyncio
    async def test_fusion_score_spread_traced(self, pipeline):
        response = await pipeline.search(QUERY)

        scores = [1 / 62 + 1 / 61, 1 / 61 + 1 / 63, 1 / 62, 1 / 63]
        expected_mean = sum(scores) / len(scores)
        expected_variance = sum((s - expected_mean) ** 2 for s in scores) / len(scores)
        data = response.trace.get_stage(PipelineState.FUSING).data
        assert data["score_mean"] == pytest.approx(expected_mean)
        assert data["score_variance"] == pytest.approx(expected_variance)


class TestDegradation:
    """Test partial failures"""

    @pytest.mark.asyncio
    async def test_timed_out_retriever(self):
        slow = keyword(["D"], delay=5.0)
        pipeline = HybridRetrievalPipeline(
            [semantic(["A", "B", "C"]), slow],
            embedder=FakeEmbedder(),
            config=fast_config(retrieval_timeout_seconds=0.05, deadline_seconds=2.0)
        )

        start = time.monotonic()
        response = await pipeline.search(QUERY)
        elapsed = time.monotonic() - start

        assert [hit.id for hit in response.hits] == ["A", "B", "C"]
        assert elapsed < 2.0
        assert response.degraded is True
        failed = [c for c in response.trace.retriever_calls if not c.succeeded]
        assert len(failed) == 1
        assert failed[0].method == "keyword"

    @pytest.mark.asyncio
    async def test_malformed_backend_response(self):
        broken = keyword(["D"], error=RuntimeError("unexpected payload"))
        pipeline = HybridRetrievalPipeline(
            [semantic(["A"]), broken], embedder=FakeEmbedder(), config=fast_config()
        )

        response = await pipeline.search(QUERY)

        assert [hit.id for hit in response.hits] == ["A"]
        assert any("keyword" in w for w in response.trace.warnings)

    @pytest.mark.asyncio
    async def test_retry_on_unavailable(self):
        flaky = keyword(["D"], fail_times=1)
        pipeline = HybridRetrievalPipeline(
            [semantic(["A"]), flaky],
            embedder=FakeEmbedder(),
            config=fast_config(retrieval_max_retries=1)
        )

        response = await pipeline.search(QUERY)

        assert {hit.id for hit in response.hits} == {"A", "D"}
        call = next(c for c in response.trace.retriever_calls if c.method == "keyword")
        assert call.succeeded is True
        assert call.attempts == 2
        assert len(flaky.calls) == 2

    @pytest.mark.asyncio
    async def test_no_retry_on_backend_error(self):
        broken = keyword(["D"], error=RuntimeError("unexpected payload"))
        pipeline = HybridRetrievalPipeline(
            [semantic(["A"]), broken],
            embedder=FakeEmbedder(),
            config=fast_config(retrieval_max_retries=3)
        )

        await pipeline.search(QUERY)

        assert len(broken.calls) == 1

    @pytest.mark.asyncio
    async def test_without_query_embedding_diversity_not_applied(self):
        pipeline = HybridRetrievalPipeline([semantic(["A", "B"]), keyword(["B"])], config=fast_config())

        response = await pipeline.search(QUERY)

        assert [hit.id for hit in response.hits] == ["B", "A"]
        assert "selecting" not in response.stages_run
        assert response.degraded is True

    @pytest.mark.asyncio
    async def test_total_failure(self):
        pipeline = HybridRetrievalPipeline(
            [
                semantic(["A"], error=BackendUnavailable("vector", "down")),
                keyword(["B"], error=ConnectionRefusedError("refused")),
            ],
            embedder=FakeEmbedder(),
            config=fast_config()
        )

        with pytest.raises(RetrievalFailedError) as exc_info:
            await pipeline.search(QUERY)

        trace = exc_info.value.trace
        assert trace.state == PipelineState.FAILED
        assert len(trace.retriever_calls) == 2
        assert all(not c.succeeded for c in trace.retriever_calls)
        assert pipeline.get_stats()["failed_searches"] == 1

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self):
        pipeline = HybridRetrievalPipeline(
            [semantic(["A"], delay=1.0), keyword(["B"], delay=1.0)],
            embedder=FakeEmbedder(),
            config=fast_config(retrieval_timeout_seconds=5.0, deadline_seconds=0.1)
        )

        start = time.monotonic()
        with pytest.raises(SearchDeadlineExceeded):
            await pipeline.search(QUERY)

        assert time.monotonic() - start < 1.0
        assert pipeline.get_stats()["deadline_exceeded"] == 1

    @pytest.mark.asyncio
    async def test_deadline_cancels_in_flight_calls(self):
        slow_semantic = HangingRetriever(RetrievalMethod.SEMANTIC)
        slow_keyword = HangingRetriever(RetrievalMethod.KEYWORD)
        pipeline = HybridRetrievalPipeline(
            [slow_semantic, slow_keyword],
            embedder=FakeEmbedder(),
            config=fast_config(retrieval_timeout_seconds=5.0, deadline_seconds=0.1)
        )

        with pytest.raises(SearchDeadlineExceeded):
            await pipeline.search(QUERY)

        assert len(slow_semantic.calls) == 1
        assert slow_semantic.cancelled is True
        assert slow_keyword.cancelled is True

    @pytest.mark.asyncio
    async def test_keyword_only_results_survive_exclusion_policy(self):
        pipeline = HybridRetrievalPipeline(
            [
                semantic(["A"], error=BackendUnavailable("vector", "down")),
                keyword(["B", "D", "A"]),
            ],
            embedder=FakeEmbedder(),
            config=fast_config(missing_embedding_policy="exclude")
        )

        response = await pipeline.search(QUERY)

        assert [hit.id for hit in response.hits] == ["B", "D", "A"]
        assert response.degraded is True
        selecting = response.trace.get_stage(PipelineState.SELECTING)
        assert selecting.data["excluded_ids"] == ["B", "D", "A"]
        assert "selecting" not in response.stages_run

    @pytest.mark.asyncio
    async def test_slow_candidate_embedding_times_out(self):
        embedder = FakeEmbedder(document_delay=5.0)
        pipeline = HybridRetrievalPipeline(
            [semantic(["A", "B"]), keyword(["B", "D"])],
            embedder=embedder,
            config=fast_config(embedding_timeout_seconds=0.05)
        )

        start = time.monotonic()
        response = await pipeline.search(QUERY)

        assert time.monotonic() - start < 1.0
        assert [hit.id for hit in response.hits] == ["B", "A", "D"]
        assert embedder.document_calls == [["text of D"]]
        assert response.trace.get_stage(PipelineState.SELECTING).data["excluded_ids"] == ["D"]

    @pytest.mark.asyncio
    async def test_hung_parent_lookup_keeps_own_text(self):
        retriever = StaticRetriever(
            RetrievalMethod.SEMANTIC,
            [make_hit("A", embedding=UNIT, parent_id="P1", text="chunk A")]
        )
        pipeline = HybridRetrievalPipeline(
            [retriever],
            embedder=FakeEmbedder(),
            document_expander=DocumentExpander(HangingParentStore()),
            config=fast_config(
                enabled_stages=(OptionalStage.DOCUMENT_EXPANSION,),
                parent_lookup_timeout_seconds=0.05
            )
        )

        start = time.monotonic()
        response = await pipeline.search(QUERY)

        assert time.monotonic() - start < 1.0
        assert response.hits[0].text == "chunk A"
        assert response.hits[0].expanded is False
        assert pipeline.document_expander.get_stats()["failed_lookups"] == 1


class TestQueryExpansion:
    """Test the query expansion stage"""

    @pytest.mark.asyncio
    async def test_variants_fan_out(self):
        sem = semantic(["A"])
        kw = keyword(["B"])
        client = FakeLLMClient("deferred loading\non-demand loading")
        pipeline = HybridRetrievalPipeline(
            [sem, kw], embedder=FakeEmbedder(), query_expander=QueryExpander(client), config=fast_config()
        )

        response = await pipeline.search(QUERY, config=fast_config(
            enabled_stages=(OptionalStage.QUERY_EXPANSION,),
            num_query_variants=2
        ))

        assert response.variants == (QUERY, "deferred loading", "on-demand loading")
        assert [c[0] for c in sem.calls] == list(response.variants)
        assert len(response.trace.retriever_calls) == 6
        assert "expanding" in response.stages_run
        hit = next(h for h in response.hits if h.id == "A")
        assert {c.query_text for c in hit.provenance} == set(response.variants)

    @pytest.mark.asyncio
    async def test_expansion_failure_uses_original(self):
        client = FakeLLMClient(error=BackendUnavailable("openai", "rate limited"))
        pipeline = HybridRetrievalPipeline(
            [semantic(["A"])], embedder=FakeEmbedder(), query_expander=QueryExpander(client)
        )

        response = await pipeline.search(QUERY, config=fast_config(
            enabled_stages=(OptionalStage.QUERY_EXPANSION,)
        ))

        assert response.variants == (QUERY,)
        assert [hit.id for hit in response.hits] == ["A"]
        assert "expanding" not in response.stages_run
        assert response.degraded is True

    @pytest.mark.asyncio
    async def test_expansion_without_expander(self):
        pipeline = HybridRetrievalPipeline([semantic(["A"])], embedder=FakeEmbedder())

        response = await pipeline.search(QUERY, config=fast_config(
            enabled_stages=(OptionalStage.QUERY_EXPANSION,)
        ))

        assert response.variants == (QUERY,)
        assert response.degraded is True


class TestOptionalStages:
    """Test document expansion, reranking and compression"""

    @pytest.mark.asyncio
    async def test_reranking(self, pipeline):
        service = FakeRerankingService({"A": 0.2, "B": 0.1, "C": 0.9, "D": 0.5})
        pipeline.reranker = Reranker(service)

        response = await pipeline.search(QUERY, config=fast_config(
            enabled_stages=(OptionalStage.RERANKING,),
            rerank_top_n=2
        ))

        assert [hit.id for hit in response.hits] == ["C", "D"]
        assert response.hits[0].score == pytest.approx(0.9)
        assert response.hits[0].rerank_score == pytest.approx(0.9)
        assert "reranking" in response.stages_run

    @pytest.mark.asyncio
    async def test_reranker_failure_keeps_order(self, pipeline):
        baseline = await pipeline.search(QUERY)
        pipeline.reranker = Reranker(FakeRerankingService(error=BackendUnavailable("cross-encoder", "oom")))

        response = await pipeline.search(QUERY, config=fast_config(
            enabled_stages=(OptionalStage.RERANKING,),
            rerank_top_n=1
        ))

        assert [hit.id for hit in response.hits] == [hit.id for hit in baseline.hits]
        assert all(hit.rerank_score is None for hit in response.hits)
        assert "reranking" not in response.stages_run
        assert response.degraded is True

    @pytest.mark.asyncio
    async def test_reranker_timeout_keeps_order(self, pipeline):
        pipeline.reranker = Reranker(FakeRerankingService({"C": 1.0}, delay=1.0))

        response = await pipeline.search(QUERY, config=fast_config(
            enabled_stages=(OptionalStage.RERANKING,),
            rerank_timeout_seconds=0.05
        ))

        assert len(response.hits) == 4
        assert "reranking" not in response.stages_run

    @pytest.mark.asyncio
    async def test_document_expansion(self):
        retriever = StaticRetriever(
            RetrievalMethod.SEMANTIC,
            [make_hit("A", embedding=UNIT, parent_id="P1", text="chunk A")]
        )
        store = InMemoryParentStore([ParentDocument(id="P1", text="Full section around chunk A.")])
        pipeline = HybridRetrievalPipeline(
            [retriever], embedder=FakeEmbedder(), document_expander=DocumentExpander(store)
        )

        response = await pipeline.search(QUERY, config=fast_config(
            enabled_stages=(OptionalStage.DOCUMENT_EXPANSION,)
        ))

        assert response.hits[0].id == "A"
        assert response.hits[0].text == "Full section around chunk A."
        assert response.hits[0].expanded is True
        assert response.hits[0].parent_id == "P1"

    @pytest.mark.asyncio
    async def test_compression_round_trip(self, pipeline):
        def respond(messages):
            passage = passage_of(messages)
            return "IRRELEVANT" if passage == "text of D" else passage.upper()

        pipeline.compressor = ContextCompressor(FakeLLMClient(respond))
        before = await pipeline.search(QUERY)

        response = await pipeline.search(QUERY, config=fast_config(
            enabled_stages=(OptionalStage.COMPRESSION,)
        ))

        before_ids = [hit.id for hit in before.hits]
        after_ids = [hit.id for hit in response.hits]
        assert after_ids == [doc_id for doc_id in before_ids if doc_id != "D"]
        for hit in response.hits:
            assert hit.text == f"TEXT OF {hit.id}"
            assert hit.compressed is True
        stage = response.trace.get_stage(PipelineState.COMPRESSING)
        assert stage.data["dropped_irrelevant"] == 1

    @pytest.mark.asyncio
    async def test_missing_component_degrades(self, pipeline):
        response = await pipeline.search(QUERY, config=fast_config(
            enabled_stages=(OptionalStage.RERANKING, OptionalStage.COMPRESSION)
        ))

        assert len(response.hits) == 4
        assert response.degraded is True
        assert "reranking" not in response.stages_run
        assert "compressing" not in response.stages_run

    @pytest.mark.asyncio
    async def test_stages_run_in_fixed_order(self):
        client = FakeLLMClient(lambda messages: "lazy init" if "Phrasings" in messages[-1]["content"] else "span")
        pipeline = HybridRetrievalPipeline(
            [semantic(["A", "B"])],
            embedder=FakeEmbedder(),
            query_expander=QueryExpander(client),
            document_expander=DocumentExpander(InMemoryParentStore()),
            reranker=Reranker(FakeRerankingService({"A": 0.1, "B": 0.2})),
            compressor=ContextCompressor(client)
        )

        response = await pipeline.search(QUERY, config=fast_config(
            enabled_stages=(
                OptionalStage.COMPRESSION,
                OptionalStage.RERANKING,
                OptionalStage.DOCUMENT_EXPANSION,
                OptionalStage.QUERY_EXPANSION,
            ),
            num_query_variants=1
        ))

        assert [s.value for s in response.trace.transitions] == [
            "expanding",
            "retrieving",
            "fusing",
            "selecting",
            "expanding_docs",
            "reranking",
            "compressing",
            "done",
        ]
        assert [hit.id for hit in response.hits] == ["B", "A"]

    @pytest.mark.asyncio
    async def test_token_budget(self, pipeline):
        response = await pipeline.search(QUERY, config=fast_config(max_context_tokens=4))

        # each "text of X" is estimated at 2 tokens
        assert len(response.hits) == 2


class TestConcurrentSearches:
    """Test per-call configuration isolation"""

    @pytest.mark.asyncio
    async def test_different_configs_do_not_interfere(self, pipeline):
        small, large = await asyncio.gather(
            pipeline.search(QUERY, config=fast_config(mmr_top_k=1)),
            pipeline.search(QUERY, config=fast_config(mmr_top_k=3)),
        )

        assert len(small) == 1
        assert len(large) == 3
        assert small.trace.trace_id != large.trace.trace_id
        assert pipeline.config.mmr_top_k == 20


class TestResponseSerialization:
    """Test response dictionaries"""

    @pytest.mark.asyncio
    async def test_to_dict(self, pipeline):
        data = (await pipeline.search(QUERY)).to_dict()

        assert data["query"] == QUERY
        assert data["variants"] == [QUERY]
        assert data["stages_run"] == ["retrieving", "fusing", "selecting"]
        assert data["degraded"] is False
        hit = data["hits"][0]
        assert set(hit) >= {"id", "text", "score", "rrf_score", "provenance"}
        assert hit["provenance"][0]["method"] in ("semantic", "keyword")
        assert data["trace"]["state"] == "done"
        assert data["config"]["fusion"]["rrf_k"] == 60


class TestHealthAndStats:
    """Test health checks and counters"""

    @pytest.mark.asyncio
    async def test_health_check(self):
        healthy = MagicMock()
        healthy.health_check = AsyncMock(return_value=True)
        unhealthy = MagicMock()
        unhealthy.health_check = AsyncMock(return_value=False)
        pipeline = HybridRetrievalPipeline([
            KeywordRetriever(healthy, name="bm25"),
            KeywordRetriever(unhealthy, name="bm25-replica"),
        ])

        health = await pipeline.health_check()

        assert health == {"bm25": True, "bm25-replica": False, "overall": False}

    @pytest.mark.asyncio
    async def test_health_check_includes_parent_store_and_reranker(self):
        index = MagicMock()
        index.health_check = AsyncMock(return_value=True)
        store = MagicMock()
        store.health_check = AsyncMock(return_value=False)
        pipeline = HybridRetrievalPipeline(
            [KeywordRetriever(index, name="bm25")],
            document_expander=DocumentExpander(store),
            reranker=Reranker(FakeRerankingService())
        )

        health = await pipeline.health_check()

        assert health == {"bm25": True, "parent_store": False, "reranker": True, "overall": False}

    @pytest.mark.asyncio
    async def test_stats(self, pipeline):
        pipeline.reranker = Reranker(FakeRerankingService({"A": 1.0}))

        await pipeline.search(QUERY)
        stats = pipeline.get_stats()

        assert stats["total_searches"] == 1
        assert stats["failed_searches"] == 0
        assert "reranker" in stats


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
