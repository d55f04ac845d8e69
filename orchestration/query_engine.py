"""
QUERY ENGINE
The per-project orchestrator between card changes and named queries.

- generate(): recompiles stale units under the write side of a RW lock
- run_query(): solves a named query under the read side, off the event loop
- handle_*(): change notifications from the command layer
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from core.ontology import Card, InternalConsistencyError
from core.protocols import QueryName, QueryResponse
from infrastructure.error_logger import ErrorLogger
from infrastructure.fact_compiler import (
    CompilationError, CompileReport, FactCompiler, ProgramBuilder, RULES_DIR,
)
from infrastructure.result_projector import ResultProjectionError, ResultProjector
from infrastructure.solver_gateway import SolverError, SolverGateway

logger = logging.getLogger("CardLogic.QueryEngine")

QUERIES_DIR = RULES_DIR / "queries"
NO_ANSWERS = "Solver returned no answers"


class QueryContractError(InternalConsistencyError):
    """A query returned zero or several results where exactly one was expected."""
    pass


# =============================================================================
# READ/WRITE LOCK
# =============================================================================

class ReadWriteLock:
    """
    Writer-priority read/write lock for asyncio tasks.

    Readers share the lock; a waiting writer blocks new readers so a stream
    of queries cannot starve generation.
    """

    def __init__(self):
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writing(self) -> bool:
        return self._writer

    @asynccontextmanager
    async def read(self):
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self):
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


# =============================================================================
# QUERY ENGINE
# =============================================================================

class QueryEngine:
    """
    Calculation engine for one project.

    Args:
        compiler: FactCompiler bound to the project's store and the gateway
        gateway: SolverGateway shared by all projects of the process
        projector: ResultProjector (default instance if omitted)
        error_logger: Optional ErrorLogger for failure records
    """

    def __init__(
        self,
        compiler: FactCompiler,
        gateway: SolverGateway,
        projector: Optional[ResultProjector] = None,
        queries_dir: Path = QUERIES_DIR,
        error_logger: Optional[ErrorLogger] = None
    ):
        self.compiler = compiler
        self.gateway = gateway
        self.projector = projector or ResultProjector()
        self.queries_dir = Path(queries_dir)
        self.error_logger = error_logger
        self.lock = ReadWriteLock()
        self._templates: Dict[QueryName, str] = {}

    @property
    def category(self) -> str:
        return self.compiler.category

    def _log(self, error: Exception, **context):
        if self.error_logger:
            self.error_logger.log_error(error, **context)

    # =========================================================================
    # GENERATION
    # =========================================================================

    async def generate(self) -> CompileReport:
        """
        Bring the compiled programs up to date.

        A caller that waited for another generation to commit finds nothing
        stale and returns an empty report without touching the store.
        """
        async with self.lock.write():
            if not self.compiler.has_stale():
                logger.debug(f"[{self.category}] Nothing stale, generation skipped")
                return CompileReport()
            try:
                report = self.compiler.generate()
            except CompilationError as e:
                self._log(e, card_key=e.card_key)
                raise
        if report.changed:
            logger.info(
                f"[{self.category}] Generated: {len(report.updated)} updated, "
                f"{len(report.removed)} removed ({report.duration_ms:.1f}ms)"
            )
        return report

    async def _handle_changes(self, card_keys: Iterable[str]):
        """Invalidate, then recompute right away if nothing else was pending."""
        card_keys = list(card_keys)
        async with self.lock.write():
            was_stale = self.compiler.has_stale()
            for key in card_keys:
                self.compiler.invalidate(key)
            if was_stale:
                return
            try:
                self.compiler.generate()
            except CompilationError as e:
                logger.warning(f"[{self.category}] Recompute failed, left stale for next generate(): {e}")
                self._log(e, card_key=e.card_key)

    async def handle_card_changed(self, card: Union[Card, str]):
        await self._handle_changes([card if isinstance(card, str) else card.key])

    async def handle_card_moved(self, card: Union[Card, str]):
        await self._handle_changes([card if isinstance(card, str) else card.key])

    async def handle_card_removed(self, card_key: str, unlinked: Iterable[str] = ()):
        """`unlinked` are remaining cards whose links to the removed subtree were dropped."""
        await self._handle_changes([card_key, *unlinked])

    async def handle_new_cards(self, cards: Iterable[Union[Card, str]]):
        await self._handle_changes([c if isinstance(c, str) else c.key for c in cards])

    async def handle_resource_changed(self, kind: str, name: str):
        async with self.lock.write():
            self.compiler.invalidate_resource(kind, name)

    # =========================================================================
    # QUERIES
    # =========================================================================

    @staticmethod
    def _query_name(name: Union[QueryName, str]) -> QueryName:
        try:
            return QueryName(name)
        except ValueError:
            raise ValueError(f"Unknown query: {name}") from None

    def _template(self, query: QueryName) -> str:
        if query not in self._templates:
            self._templates[query] = (self.queries_dir / f"{query.value}.lp").read_text()
        return self._templates[query]

    def build_main_program(self, query: Union[QueryName, str], params: Optional[Dict[str, Any]] = None) -> str:
        """Parameter facts followed by the query's template. A list value gives one fact per item."""
        query = self._query_name(query)
        builder = ProgramBuilder().comment(f"query {query.value}")
        for name, value in sorted((params or {}).items()):
            if value is None:
                continue
            if isinstance(value, (list, tuple, set)):
                for item in sorted(value):
                    builder.fact("queryParam", name, item)
            else:
                builder.fact("queryParam", name, value)
        return builder.raw(self._template(query)).build()

    async def run_query(
        self,
        name: Union[QueryName, str],
        params: Optional[Dict[str, Any]] = None
    ) -> QueryResponse:
        """
        Run a named query against the current compiled programs.

        Returns:
            QueryResponse; zero results is a valid answer, not an error

        Raises:
            ValueError: unknown query name
            SolverError: the solver could not produce answers
            ResultProjectionError: the answer does not fit the query shape
        """
        query = self._query_name(name)
        main_program = self.build_main_program(query, params)
        card_key = (params or {}).get("cardKey")

        async with self.lock.read():
            try:
                solved = await asyncio.to_thread(self.gateway.solve, main_program, [self.category])
            except SolverError as e:
                self._log(e, card_key=card_key, query=query.value)
                raise

        if not solved.answers:
            logger.warning(f"[{self.category}] Query '{query.value}' returned no answers")
            return QueryResponse(query=query, error=NO_ANSWERS)
        if len(solved.answers) > 1:
            logger.warning(
                f"[{self.category}] Query '{query.value}' has {len(solved.answers)} answers, using the first"
            )

        try:
            response = self.projector.project(query, solved.answers[0])
        except ResultProjectionError as e:
            self._log(e, card_key=card_key, query=query.value)
            raise
        logger.debug(
            f"[{self.category}] Query '{query.value}': {len(response.results)} results "
            f"in {solved.execution_time * 1000:.1f}ms{' (cached)' if solved.cached else ''}"
        )
        return response

    async def run_card_query(self, card_key: str) -> QueryResponse:
        """Card query that must return exactly one card."""
        response = await self.run_query(QueryName.CARD, {"cardKey": card_key})
        if not response.results:
            raise QueryContractError("Card query didn't return results")
        if len(response.results) > 1:
            raise QueryContractError("Card query returned multiple cards")
        return response

    def logic_program(self, query: Union[QueryName, str, None] = None, params: Optional[Dict[str, Any]] = None) -> str:
        """The full program text the solver would see (debugging aid)."""
        main_program = "" if query is None else self.build_main_program(query, params)
        return self.gateway.get_program(main_program, [self.category])
