"""
CARD LOGIC ENGINE
The per-project handle that ties together:
- CardStore (cards and resources)
- FactCompiler + SolverGateway (logic programs)
- QueryEngine (generation and named queries)
- ActionGuard (calculated permissions)
- TransitionEngine (workflow state machine)
- FieldUpdater (calculated field updates after create and transition)

Commands consult the guard first, mutate the store, then report the change
to the QueryEngine so the next query sees it.
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from core.ontology import Card
from core.protocols import QueryName, QueryResponse
from core.state_machine import CardNotFoundError, TransitionEngine
from infrastructure.card_store import CardStore
from infrastructure.config import EngineConfig
from infrastructure.error_logger import ErrorLogger
from infrastructure.fact_compiler import CompilationError, CompileReport, FactCompiler
from infrastructure.result_projector import ResultProjectionError
from infrastructure.solver_gateway import SolverError, SolverGateway
from orchestration.field_updater import FieldUpdater
from orchestration.governance import Action, ActionGuard
from orchestration.query_engine import QueryEngine

logger = logging.getLogger("Engine")


class ProjectSession:
    """
    Explicit handle for one project. Several sessions may share a gateway;
    their programs are kept apart by the project prefix.
    """

    def __init__(
        self,
        store: CardStore,
        config: Optional[EngineConfig] = None,
        gateway: Optional[SolverGateway] = None,
        error_logger: Optional[ErrorLogger] = None
    ):
        self.config = config or EngineConfig()
        self.store = store
        self.gateway = gateway or SolverGateway(
            timeout_seconds=self.config.solver_timeout_seconds,
            cache_entries=self.config.solve_cache_entries,
            message_limit=self.config.message_limit,
        )
        if error_logger is None and self.config.error_log_dir:
            error_logger = ErrorLogger(self.config.error_log_dir, store.prefix)
        self.error_logger = error_logger

        self.compiler = FactCompiler(store, self.gateway)
        self.engine = QueryEngine(self.compiler, self.gateway, error_logger=error_logger)
        self.guard = ActionGuard(self.engine)
        self.transitions = TransitionEngine(store, self.engine.handle_card_changed, guard=self.guard)
        self.updater = FieldUpdater(store, error_logger=error_logger)
        logger.info(f"Project session opened: {store.prefix}")

    @classmethod
    def from_yaml(
        cls,
        path: Union[str, Path],
        config: Optional[EngineConfig] = None,
        gateway: Optional[SolverGateway] = None
    ) -> "ProjectSession":
        return cls(CardStore.from_yaml(path), config=config, gateway=gateway)

    @property
    def prefix(self) -> str:
        return self.store.prefix

    def _require(self, card_key: str) -> Card:
        card = self.store.get_card(card_key)
        if card is None:
            raise CardNotFoundError(f"Card '{card_key}' does not exist in the project")
        return card

    # =========================================================================
    # CALCULATION
    # =========================================================================

    async def generate(self) -> CompileReport:
        return await self.engine.generate()

    async def run_query(self, name: Union[QueryName, str], params: Optional[Dict[str, Any]] = None) -> QueryResponse:
        return await self.engine.run_query(name, params)

    async def check_permission(self, action: Union[Action, str], card_key: str, param: Optional[str] = None):
        await self.guard.check_permission(action, card_key, param)

    # =========================================================================
    # COMMANDS
    # =========================================================================

    async def _apply_calculated_updates(self, query: QueryName, params: Dict[str, Any]) -> List[str]:
        """Run a change query and write its field updates back to the store."""
        try:
            await self.engine.generate()
            response = await self.engine.run_query(query, params)
        except (CompilationError, SolverError, ResultProjectionError) as e:
            logger.warning(f"[{self.prefix}] '{query.value}' updates skipped: {e}")
            return []
        if response.error:
            logger.warning(f"[{self.prefix}] '{query.value}' updates skipped: {response.error}")
            return []
        updates = [u for result in response.results for u in result.update_fields]
        changed = self.updater.apply(updates)
        if changed:
            await self.engine.handle_new_cards(changed)
        return changed

    async def card_transition(self, card_key: str, transition_name: str) -> Card:
        """Transition the card, then apply the updates its calculations request for it."""
        await self.transitions.card_transition(card_key, transition_name)
        await self._apply_calculated_updates(
            QueryName.ON_TRANSITION, {"cardKey": card_key, "transition": transition_name}
        )
        return self._require(card_key)

    async def create_card(
        self,
        card_type: str,
        parent: Optional[str] = None,
        title: str = "",
        fields: Optional[Dict[str, Any]] = None,
        labels: Optional[List[str]] = None
    ) -> Card:
        if parent is not None:
            self._require(parent)
        card = self.store.create_card(card_type, parent=parent, title=title, fields=fields, labels=labels)
        await self.engine.handle_new_cards([card])
        await self._apply_calculated_updates(QueryName.ON_CREATION, {"cardKeys": [card.key]})
        return self._require(card.key)

    async def update_card_fields(self, card_key: str, fields: Dict[str, Any]) -> Card:
        self._require(card_key)
        for name in fields:
            await self.guard.check_permission(Action.EDIT_FIELD, card_key, name)
        card = self.store.update_card_fields(card_key, fields)
        await self.engine.handle_card_changed(card)
        return card

    async def update_card_content(self, card_key: str, **changes) -> Card:
        """Change title, labels or links of a card."""
        self._require(card_key)
        await self.guard.check_permission(Action.EDIT_CONTENT, card_key)
        card = self.store.update_card(card_key, **changes)
        await self.engine.handle_card_changed(card)
        return card

    async def move_card(self, card_key: str, new_parent: Optional[str]) -> Card:
        self._require(card_key)
        await self.guard.check_permission(Action.MOVE, card_key)
        card = self.store.move_card(card_key, new_parent)
        await self.engine.handle_card_moved(card)
        return card

    async def remove_card(self, card_key: str) -> List[str]:
        self._require(card_key)
        await self.guard.check_permission(Action.DELETE, card_key)
        linking = self.store.linking_cards(self.store.subtree(card_key))
        removed = self.store.remove_card(card_key)
        await self.engine.handle_card_removed(card_key, unlinked=linking)
        return removed

    def close(self):
        """Drop this project's programs from the gateway."""
        count = self.gateway.remove_programs_by_category(self.prefix)
        logger.info(f"Project session closed: {self.prefix} ({count} programs removed)")
