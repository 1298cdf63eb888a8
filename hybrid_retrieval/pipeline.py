"""
Hybrid Retrieval Pipeline
Orchestrates expansion, parallel retrieval, rank fusion, diversity selection and the optional precision stages
"""
import asyncio
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, List, Dict, Any, Optional, Sequence, Tuple, Union
import logging

from hybrid_retrieval.config import DEFAULT_CONFIG, STAGE_ORDER, OptionalStage, SearchConfig
from hybrid_retrieval.context.compressor import ContextCompressor
from hybrid_retrieval.context.parent_retriever import DocumentExpander, apply_token_budget
from hybrid_retrieval.embeddings.embedder import BaseEmbedder
from hybrid_retrieval.errors import (
    BackendError,
    BackendUnavailable,
    RetrievalFailedError,
    SearchDeadlineExceeded,
)
from hybrid_retrieval.fusion.rrf import RankFusion
from hybrid_retrieval.models import FusedResult, Query, RankedList, SearchHit
from hybrid_retrieval.query.query_expander import QueryExpander
from hybrid_retrieval.reranking.reranker import Reranker
from hybrid_retrieval.search.retrievers import BaseRetriever
from hybrid_retrieval.selection.mmr import MMRSelector
from hybrid_retrieval.similarity import mean, variance
from hybrid_retrieval.trace import PipelineState, PipelineTrace, RetrieverCall, StageTrace

logger = logging.getLogger(__name__)


@dataclass
class SearchResponse:
    """
    Result of one search call

    ``hits`` is always a list (possibly empty). ``stages_run`` and
    ``degraded`` tell the caller which guarantees actually held.
    """
    query: Query
    hits: List[SearchHit]
    trace: PipelineTrace
    config: SearchConfig

    @property
    def variants(self) -> Tuple[str, ...]:
        return self.query.variants

    @property
    def stages_run(self) -> List[str]:
        return self.trace.stages_run()

    @property
    def degraded(self) -> bool:
        return bool(self.trace.warnings or self.trace.errors)

    def __len__(self) -> int:
        return len(self.hits)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query.text,
            "variants": list(self.variants),
            "hits": [hit.to_dict() for hit in self.hits],
            "stages_run": self.stages_run,
            "degraded": self.degraded,
            "trace": self.trace.to_dict(),
            "config": self.config.to_dict(),
        }


StageHandler = Callable[[Query, List[SearchHit], SearchConfig, StageTrace, PipelineTrace], Awaitable[List[SearchHit]]]


class HybridRetrievalPipeline:
    """
    Hybrid retrieval orchestrator

    Flow:
    1. Query expansion (optional): original query plus LLM paraphrases
    2. N variants x M retrievers fanned out concurrently, each call with its own timeout
    3. Reciprocal rank fusion over every successful ranked list
    4. MMR selection down to a bounded candidate set
    5. Optional stages in fixed order: parent expansion, reranking, compression
    6. Token budget truncation

    Only total retrieval failure raises; every other problem degrades the
    result and is recorded in the trace. The pipeline keeps no per-query
    state on the instance, so one instance can serve concurrent searches.
    """

    def __init__(
        self,
        retrievers: Sequence[BaseRetriever],
        embedder: Optional[BaseEmbedder] = None,
        query_expander: Optional[QueryExpander] = None,
        document_expander: Optional[DocumentExpander] = None,
        reranker: Optional[Reranker] = None,
        compressor: Optional[ContextCompressor] = None,
        config: Optional[SearchConfig] = None
    ):
        if not retrievers:
            raise ValueError("at least one retriever is required")

        self.retrievers = list(retrievers)
        self.embedder = embedder
        self.query_expander = query_expander
        self.document_expander = document_expander
        self.reranker = reranker
        self.compressor = compressor
        self.config = config or DEFAULT_CONFIG
        self.selector = MMRSelector(embedder)

        self._stage_handlers: Dict[OptionalStage, Tuple[PipelineState, StageHandler]] = {
            OptionalStage.DOCUMENT_EXPANSION: (PipelineState.EXPANDING_DOCS, self._expand_documents),
            OptionalStage.RERANKING: (PipelineState.RERANKING, self._rerank),
            OptionalStage.COMPRESSION: (PipelineState.COMPRESSING, self._compress),
        }

        self._stats = {
            "total_searches": 0,
            "failed_searches": 0,
            "degraded_searches": 0,
            "deadline_exceeded": 0
        }

        logger.info(
            f"Hybrid retrieval pipeline initialized with {len(self.retrievers)} retrievers "
            f"({', '.join(r.name for r in self.retrievers)})"
        )

    async def search(
        self,
        query: Union[str, Query],
        config: Optional[SearchConfig] = None,
        filters: Optional[Dict[str, Any]] = None
    ) -> SearchResponse:
        """
        Execute the retrieval pipeline

        Args:
            query: Query text or a prepared Query
            config: Per-call configuration (pipeline default if None)
            filters: Metadata filters forwarded to every retriever

        Returns:
            SearchResponse with ordered hits and the pipeline trace

        Raises:
            RetrievalFailedError: every retriever failed for every query variant
            SearchDeadlineExceeded: the configured overall deadline elapsed
        """
        config = config or self.config
        if isinstance(query, str):
            query = Query(text=query, filters=dict(filters or {}))
        elif filters:
            query = replace(query, filters={**query.filters, **filters})

        trace = PipelineTrace(original_query=query.text)
        self._stats["total_searches"] += 1

        try:
            if config.deadline_seconds is not None:
                response = await asyncio.wait_for(
                    self._run(query, config, trace),
                    timeout=config.deadline_seconds
                )
            else:
                response = await self._run(query, config, trace)
        except asyncio.TimeoutError:
            self._stats["deadline_exceeded"] += 1
            interrupted = trace.state.value
            trace.add_error(f"deadline of {config.deadline_seconds}s exceeded in {interrupted}")
            trace.finish(PipelineState.FAILED)
            logger.error(f"Search deadline exceeded for '{query.text[:50]}' during {interrupted}")
            raise SearchDeadlineExceeded(config.deadline_seconds)
        except RetrievalFailedError:
            self._stats["failed_searches"] += 1
            raise

        if response.degraded:
            self._stats["degraded_searches"] += 1
        return response

    def search_sync(
        self,
        query: Union[str, Query],
        config: Optional[SearchConfig] = None,
        filters: Optional[Dict[str, Any]] = None
    ) -> SearchResponse:
        """Blocking wrapper around ``search`` for callers without an event loop"""
        return asyncio.run(self.search(query, config, filters))

    async def _run(self, query: Query, config: SearchConfig, trace: PipelineTrace) -> SearchResponse:
        query = await self._expand_query(query, config, trace)
        ranked_lists = await self._retrieve(query, config, trace)

        stage = trace.start_stage(PipelineState.FUSING, input_count=len(ranked_lists))
        fused = RankFusion(config.rrf_k, config.rrf_tie_break).fuse(ranked_lists)
        fused_scores = [r.rrf_score for r in fused]
        stage.complete(len(fused), {
            "rrf_k": config.rrf_k,
            "tie_break": config.rrf_tie_break.value,
            "score_mean": mean(fused_scores),
            "score_variance": variance(fused_scores),
        })

        hits = await self._select(query, fused, config, trace)

        for optional_stage in STAGE_ORDER:
            if optional_stage not in self._stage_handlers:
                continue
            state, handler = self._stage_handlers[optional_stage]
            if not config.is_enabled(optional_stage):
                trace.skip_stage(state, "disabled", input_count=len(hits))
                continue
            stage = trace.start_stage(state, input_count=len(hits))
            hits = await handler(query, hits, config, stage, trace)

        hits = apply_token_budget(hits, config.max_context_tokens)

        trace.finish(PipelineState.DONE, len(hits))
        logger.info(
            f"Search completed: '{query.text[:50]}' → {len(hits)} hits in "
            f"{trace.total_duration_ms:.0f}ms (stages: {', '.join(trace.stages_run())})"
        )
        return SearchResponse(query=query, hits=hits, trace=trace, config=config)

    async def _expand_query(self, query: Query, config: SearchConfig, trace: PipelineTrace) -> Query:
        stage = trace.start_stage(PipelineState.EXPANDING, input_count=1)

        if not config.is_enabled(OptionalStage.QUERY_EXPANSION):
            stage.skip("disabled")
        elif self.query_expander is None:
            trace.add_warning("query expansion enabled but no query expander configured")
            stage.fail("no query expander configured", output_count=1)
        else:
            variants = await self.query_expander.expand(
                query.text,
                config.num_query_variants,
                timeout_seconds=config.expansion_timeout_seconds
            )
            query = query.with_variants(variants[1:])
            if len(query.variants) == 1 and config.num_query_variants > 0:
                trace.add_warning("query expansion produced no variants; using original query only")
                stage.fail("no variants produced", output_count=1)
            else:
                stage.complete(len(query.variants))

        trace.query_variants = list(query.variants)
        return query

    async def _retrieve(self, query: Query, config: SearchConfig, trace: PipelineTrace) -> List[RankedList]:
        pairs = [(variant, retriever) for variant in query.variants for retriever in self.retrievers]
        stage = trace.start_stage(PipelineState.RETRIEVING, input_count=len(pairs))

        outcomes = await asyncio.gather(
            *(self._call_retriever(retriever, variant, query.filters, config) for variant, retriever in pairs),
            return_exceptions=True
        )

        ranked_lists: List[RankedList] = []
        for (variant, retriever), outcome in zip(pairs, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(f"{retriever.name} raised unexpectedly for '{variant[:50]}': {outcome}")
                call = RetrieverCall(variant, retriever.method.value, False, error=f"{type(outcome).__name__}: {outcome}")
                ranked = None
            else:
                ranked, call = outcome

            trace.retriever_calls.append(call)
            if ranked is not None:
                ranked_lists.append(ranked)
            else:
                trace.add_warning(f"{retriever.name} failed for variant '{variant[:50]}': {call.error}")

        succeeded = len(ranked_lists)
        data = {"calls": len(pairs), "succeeded": succeeded, "failed": len(pairs) - succeeded}

        if succeeded == 0:
            stage.fail("all retriever calls failed")
            stage.data.update(data)
            message = f"all {len(pairs)} retriever calls failed for '{query.text[:50]}'"
            trace.add_error(message)
            trace.finish(PipelineState.FAILED)
            logger.error(message)
            raise RetrievalFailedError(message, trace=trace)

        stage.complete(sum(len(r) for r in ranked_lists), data)
        logger.info(f"Retrieval: {succeeded}/{len(pairs)} calls succeeded")
        return ranked_lists

    async def _call_retriever(
        self,
        retriever: BaseRetriever,
        variant: str,
        filters: Dict[str, Any],
        config: SearchConfig
    ) -> Tuple[Optional[RankedList], RetrieverCall]:
        """One (variant, retriever) call with timeout and retries on BackendUnavailable"""
        attempts = 0
        last_error: Optional[Exception] = None

        while attempts <= config.retrieval_max_retries:
            attempts += 1
            try:
                ranked = await asyncio.wait_for(
                    retriever.retrieve(variant, config.retrieval_top_k, filters or None),
                    timeout=config.retrieval_timeout_seconds
                )
                return ranked, RetrieverCall(variant, retriever.method.value, True, len(ranked), attempts)
            except asyncio.TimeoutError:
                last_error = BackendUnavailable(
                    retriever.name, f"timed out after {config.retrieval_timeout_seconds}s"
                )
            except BackendUnavailable as e:
                last_error = e
            except BackendError as e:
                logger.warning(f"Retriever {retriever.name} returned an unusable response: {e}")
                return None, RetrieverCall(variant, retriever.method.value, False, attempts=attempts, error=str(e))

            if attempts <= config.retrieval_max_retries:
                logger.warning(f"Retriever attempt {attempts} failed: {last_error}. Retrying...")
                await asyncio.sleep(config.retry_delay_seconds * attempts)

        logger.warning(f"Retriever {retriever.name} unavailable after {attempts} attempts: {last_error}")
        return None, RetrieverCall(variant, retriever.method.value, False, attempts=attempts, error=str(last_error))

    async def _select(
        self,
        query: Query,
        fused: List[FusedResult],
        config: SearchConfig,
        trace: PipelineTrace
    ) -> List[SearchHit]:
        stage = trace.start_stage(PipelineState.SELECTING, input_count=len(fused))

        query_embedding = None
        if fused and self.embedder is not None:
            try:
                query_embedding = await asyncio.wait_for(
                    self.embedder.embed_query(query.text),
                    timeout=config.embedding_timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.warning(f"Query embedding for MMR timed out after {config.embedding_timeout_seconds}s")
            except Exception as e:
                logger.warning(f"Query embedding for MMR failed: {e}")

        selection = await self.selector.select(
            query_embedding,
            fused,
            k=config.mmr_top_k,
            lambda_param=config.mmr_lambda,
            missing_policy=config.missing_embedding_policy,
            embedding_timeout=config.embedding_timeout_seconds
        )

        data = {
            "lambda": config.mmr_lambda,
            "diversity_applied": selection.diversity_applied,
            "excluded_ids": list(selection.excluded_ids),
        }
        if selection.excluded_ids:
            trace.add_warning(
                f"{len(selection.excluded_ids)} candidates excluded from diversity scoring (no usable embedding)"
            )
        if fused and not selection.diversity_applied:
            reason = "no query embedding" if query_embedding is None else "no candidate embeddings"
            trace.add_warning(f"diversity selection skipped: {reason}")
            stage.fail(reason, output_count=len(selection))
            stage.data.update(data)
        else:
            stage.complete(len(selection), data)

        return [SearchHit.from_fused(result) for result in selection]

    async def _expand_documents(
        self,
        query: Query,
        hits: List[SearchHit],
        config: SearchConfig,
        stage: StageTrace,
        trace: PipelineTrace
    ) -> List[SearchHit]:
        if self.document_expander is None:
            trace.add_warning("document expansion enabled but no parent store configured")
            stage.fail("no document expander configured", output_count=len(hits))
            return hits

        expanded = await self.document_expander.expand_hits(
            hits,
            timeout_seconds=config.parent_lookup_timeout_seconds
        )
        stage.complete(len(expanded), {"expanded": sum(1 for h in expanded if h.expanded)})
        return expanded

    async def _rerank(
        self,
        query: Query,
        hits: List[SearchHit],
        config: SearchConfig,
        stage: StageTrace,
        trace: PipelineTrace
    ) -> List[SearchHit]:
        if self.reranker is None:
            trace.add_warning("reranking enabled but no reranker configured")
            stage.fail("no reranker configured", output_count=len(hits))
            return hits
        if not hits:
            stage.complete(0)
            return hits

        try:
            results = await self.reranker.rerank(
                query.text,
                hits,
                config.rerank_top_n,
                timeout_seconds=config.rerank_timeout_seconds
            )
        except (BackendUnavailable, BackendError) as e:
            logger.warning(f"Reranking skipped, keeping pre-rerank order: {e}")
            trace.add_warning(f"reranking skipped: {e}")
            stage.fail(str(e), output_count=len(hits))
            return hits

        reranked = [replace(r.hit, rerank_score=r.score) for r in results]
        stage.complete(len(reranked), {"top_n": config.rerank_top_n})
        return reranked

    async def _compress(
        self,
        query: Query,
        hits: List[SearchHit],
        config: SearchConfig,
        stage: StageTrace,
        trace: PipelineTrace
    ) -> List[SearchHit]:
        if self.compressor is None:
            trace.add_warning("compression enabled but no compressor configured")
            stage.fail("no compressor configured", output_count=len(hits))
            return hits

        compressed = await self.compressor.compress_hits(
            query.text,
            hits,
            timeout_seconds=config.compression_timeout_seconds,
            concurrency=config.compression_concurrency
        )

        kept_original = sum(1 for h in compressed if not h.compressed)
        if kept_original:
            trace.add_warning(f"compression failed for {kept_original} hits; original text kept")
        stage.complete(len(compressed), {
            "dropped_irrelevant": len(hits) - len(compressed),
            "kept_original": kept_original,
        })
        return compressed

    async def health_check(self) -> Dict[str, bool]:
        """
        Check every configured backend that can report its health

        Retriever indices are keyed by retriever name; the parent store and
        the reranker appear only when those stages are configured.
        """
        checks = []
        for retriever in self.retrievers:
            index = getattr(retriever, "index", None)
            checks.append((retriever.name, getattr(index, "health_check", None)))
        if self.document_expander is not None:
            checks.append(("parent_store", self.document_expander.health_check))
        if self.reranker is not None:
            checks.append(("reranker", self.reranker.health_check))

        health = {}
        for name, check in checks:
            if check is None:
                health[name] = True
                continue
            try:
                health[name] = bool(await check())
            except Exception as e:
                logger.warning(f"Health check for {name} failed: {e}")
                health[name] = False

        health["overall"] = all(health.values())
        return health

    def get_stats(self) -> Dict[str, Any]:
        """Pipeline counters plus component counters where available"""
        stats: Dict[str, Any] = dict(self._stats)
        for name in ("query_expander", "document_expander", "reranker", "compressor"):
            component = getattr(self, name)
            if component is not None:
                stats[name] = component.get_stats()
        return stats
