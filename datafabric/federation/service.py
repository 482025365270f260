"""
Query Federation Service

    Parsed -> Dispatched -> Collecting -> Merged -> Returned
                                \\-> TimedOut (a sub-query missed the deadline)

A query is decomposed into independent keyword, vector and graph
sub-queries, dispatched in parallel under one global deadline, and the
ranked lists are merged with Reciprocal Rank Fusion. A sub-query that times
out, fails or hits an open circuit contributes an empty list and marks the
response Degraded; only a query with no dispatchable sub-query is an error.
"""
import asyncio
import time
from typing import Dict, List, Optional, Tuple

from ..core.exceptions import InvalidQuery, SubQueryTimeout, translate_exception
from ..sinks.base import RecordFilter
from ..utils.config import FederationConfig
from ..utils.logger import setup_logger
from ..utils.resilience.circuit_breaker import BreakerRegistry, CircuitBreakerConfig, call_with_breaker
from ..utils.resilience.retry import RetryConfig, async_retrying
from .filters import compile_filters
from .models import (
    FederatedQuery,
    FederatedResponse,
    FederatedResult,
    QueryState,
    QueryStatus,
    SourceOutcome,
    SourceState,
)
from .retrievers import Retriever
from .rrf import reciprocal_rank_fusion

logger = setup_logger(__name__)


class QueryFederationService:
    """
    Fans a query out to every store and fuses the answers

    Usage:
        service = QueryFederationService([keyword, vector, graph], config.federation)
        response = await service.execute(FederatedQuery(query_text="red shoes", top_k=5))
    """

    def __init__(
        self,
        retrievers: List[Retriever],
        config: Optional[FederationConfig] = None,
        breakers: Optional[BreakerRegistry] = None
    ):
        self.config = config or FederationConfig()
        self.retrievers = {r.name: r for r in retrievers}
        self.breakers = breakers if breakers is not None else BreakerRegistry(
            fail_max=self.config.breaker_fail_max,
            reset_timeout=self.config.breaker_reset_seconds,
        )
        self.queries = 0
        self.degraded = 0

    def plan(self, query: FederatedQuery) -> Tuple[List[Retriever], Optional[RecordFilter]]:
        """
        Parse a query into dispatchable sub-queries

        Raises:
            InvalidQuery: bad filter, unknown source, or nothing to dispatch
        """
        predicate = compile_filters(query.structured_filters)
        wanted = [s.value for s in query.sources] if query.sources else list(self.retrievers)
        missing = [name for name in wanted if name not in self.retrievers]
        if missing:
            raise InvalidQuery(
                f"Sources not available: {', '.join(missing)}",
                {"available": sorted(self.retrievers)}
            )
        selected = [self.retrievers[name] for name in wanted if self.retrievers[name].accepts(query)]
        if not selected:
            raise InvalidQuery(
                "No sub-query could be derived from the request",
                {"query_text": query.query_text, "sources": wanted}
            )
        return selected, predicate

    async def _sub_query(
        self,
        retriever: Retriever,
        query: FederatedQuery,
        predicate: Optional[RecordFilter]
    ) -> Tuple[List[str], SourceOutcome]:
        start = time.perf_counter()
        breaker = self.breakers.get(retriever.name)
        if breaker.current_state == CircuitBreakerConfig.STATE_OPEN:
            return [], SourceOutcome(source=retriever.name, state=SourceState.CIRCUIT_OPEN)
        try:
            async for attempt in async_retrying(
                max_attempts=RetryConfig.SUBQUERY_MAX_ATTEMPTS,
                min_wait=RetryConfig.SUBQUERY_MIN_WAIT,
                max_wait=RetryConfig.SUBQUERY_MAX_WAIT,
                multiplier=RetryConfig.SUBQUERY_MULTIPLIER,
            ):
                with attempt:
                    keys = await asyncio.to_thread(
                        call_with_breaker, breaker, retriever.retrieve, query, predicate
                    )
        except Exception as e:
            error = translate_exception(e, f"{retriever.name} sub-query")
            if breaker.current_state == CircuitBreakerConfig.STATE_OPEN:
                logger.warning(f"[Federation] {retriever.name} circuit open: {error.message}")
                return [], SourceOutcome(source=retriever.name, state=SourceState.CIRCUIT_OPEN, error=error.message)
            logger.warning(f"[Federation] {retriever.name} sub-query failed: {error.message}")
            return [], SourceOutcome(
                source=retriever.name,
                state=SourceState.FAILED,
                took_ms=(time.perf_counter() - start) * 1000,
                error=error.message,
            )
        return keys, SourceOutcome(
            source=retriever.name,
            state=SourceState.OK,
            returned=len(keys),
            took_ms=(time.perf_counter() - start) * 1000,
        )

    async def execute(self, query: FederatedQuery) -> FederatedResponse:
        """
        Run one federated query

        Raises:
            InvalidQuery: the query has no dispatchable sub-query
        """
        start = time.perf_counter()
        selected, predicate = self.plan(query)
        trail = [QueryState.PARSED]
        deadline_ms = query.deadline_ms or self.config.default_deadline_ms

        trail.append(QueryState.DISPATCHED)
        tasks: Dict[asyncio.Task, Retriever] = {
            asyncio.create_task(self._sub_query(r, query, predicate), name=f"subquery:{r.name}"): r
            for r in selected
        }

        trail.append(QueryState.COLLECTING)
        done, pending = await asyncio.wait(tasks, timeout=deadline_ms / 1000.0)
        for task in pending:
            # in-flight reads finish in their threads; their results are discarded
            task.cancel()

        ranked: Dict[str, List[str]] = {}
        outcomes: List[SourceOutcome] = []
        for task, retriever in tasks.items():
            if task in done:
                keys, outcome = task.result()
                ranked[retriever.name] = keys
            else:
                ranked[retriever.name] = []
                timeout = SubQueryTimeout(f"{retriever.name} sub-query gave no response within {deadline_ms}ms")
                outcome = SourceOutcome(
                    source=retriever.name,
                    state=SourceState.TIMED_OUT,
                    took_ms=float(deadline_ms),
                    error=timeout.message,
                )
            outcomes.append(outcome)
        fused = reciprocal_rank_fusion(ranked, k=self.config.rrf_k, top_n=query.top_n or query.top_k)
        trail.append(QueryState.MERGED)
        # a deadline miss ends the query in TimedOut; the partial merge is still returned
        trail.append(QueryState.TIMED_OUT if pending else QueryState.RETURNED)

        degraded = any(o.state != SourceState.OK for o in outcomes)
        status = QueryStatus.DEGRADED if degraded else QueryStatus.OK

        took_ms = (time.perf_counter() - start) * 1000
        self.queries += 1
        if degraded:
            self.degraded += 1
            logger.warning(
                f"[Federation] Degraded response in {took_ms:.1f}ms",
                sources={o.source: o.state.value for o in outcomes}
            )
        else:
            logger.info(f"[Federation] {len(fused)} results in {took_ms:.1f}ms")

        return FederatedResponse(
            results=[
                FederatedResult(
                    document_key=doc.document_key,
                    score=doc.score,
                    contributing_sources=doc.contributing_sources,
                    ranks=dict(doc.ranks),
                )
                for doc in fused
            ],
            status=status,
            state=trail[-1],
            transitions=trail,
            took_ms=took_ms,
            sources=sorted(outcomes, key=lambda o: o.source),
        )

    def status(self) -> Dict[str, object]:
        return {
            "sources": sorted(self.retrievers),
            "queries": self.queries,
            "degraded": self.degraded,
            "breakers": self.breakers.states(),
        }
