"""
CARD STATE MACHINE
Enforces workflow transitions for cards.

A transition is legal when the card's workflow declares it from the card's
current state or from the wildcard state "*". Permission checks (calculated
denials) are delegated to an injected guard; persistence to the store.
"""
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple, Union

from core.ontology import (
    Card, CardType, InternalConsistencyError, ResourceStore, UserInputError,
    Workflow, WorkflowTransition,
)

logger = logging.getLogger("StateMachine")


class CardNotFoundError(UserInputError):
    """Raised when a command names a card that does not exist."""
    pass


class ProjectIntegrityError(InternalConsistencyError):
    """Raised when a card points at a card type or workflow that does not exist."""
    pass


class StateTransitionError(UserInputError):
    """Raised when an invalid state transition is attempted."""
    pass


class UnknownTransitionError(StateTransitionError):
    pass


class TransitionNotAvailableError(StateTransitionError):
    pass


class PermissionGuard(Protocol):
    async def check_permission(self, action: Any, card_key: str, param: Optional[str] = None) -> None: ...


CardChangedCallback = Callable[[Card], Union[Awaitable[None], None]]


class TransitionEngine:
    """
    Moves cards through their workflows.

    The engine never talks to the calculation layer directly: it reports
    every change through `on_card_changed`.
    """

    def __init__(
        self,
        store: ResourceStore,
        on_card_changed: CardChangedCallback,
        guard: Optional[PermissionGuard] = None
    ):
        self.store = store
        self.on_card_changed = on_card_changed
        self.guard = guard

    def _resolve(self, card_key: str) -> Tuple[Card, CardType, Workflow]:
        card = self.store.get_card(card_key)
        if card is None:
            raise CardNotFoundError(f"Card '{card_key}' does not exist in the project")
        card_type = self.store.get_card_type(card.card_type)
        if card_type is None:
            raise ProjectIntegrityError(
                f"Card '{card_key}' references card type '{card.card_type}' that does not exist"
            )
        workflow = self.store.get_workflow(card_type.workflow)
        if workflow is None:
            raise ProjectIntegrityError(
                f"Card type '{card_type.name}' references workflow '{card_type.workflow}' that does not exist"
            )
        return card, card_type, workflow

    def validate_transition(self, card_key: str, transition_name: str) -> Tuple[Card, WorkflowTransition]:
        """
        Check that `transition_name` can be taken from the card's current state.

        Returns:
            The card and the matched transition

        Raises:
            CardNotFoundError, ProjectIntegrityError,
            TransitionNotAvailableError, UnknownTransitionError
        """
        card, _, workflow = self._resolve(card_key)
        state = card.workflow_state

        if not any(t.allows_from(state) for t in workflow.transitions):
            raise TransitionNotAvailableError(
                f"Card's workflow '{workflow.name}' does not contain transition "
                f"from card's current state '{state}'"
            )

        transition = workflow.transition(transition_name)
        if transition is None:
            available = ", ".join(t.name for t in workflow.transitions)
            raise UnknownTransitionError(
                f"Card's workflow '{workflow.name}' does not contain state transition "
                f"'{transition_name}'.\nThe available transitions are: {available}"
            )

        if not transition.allows_from(state):
            raise TransitionNotAvailableError(
                f"Card's workflow '{workflow.name}' does not contain state transition "
                f"from state '{state}' for '{transition_name}'"
            )
        return card, transition

    def available_transitions(self, card_key: str) -> List[WorkflowTransition]:
        card, _, workflow = self._resolve(card_key)
        return [t for t in workflow.transitions if t.allows_from(card.workflow_state)]

    async def card_transition(self, card_key: str, transition_name: str) -> Card:
        """
        Execute a transition: validate, check permission, persist, notify.

        Returns:
            The card as persisted in its new state
        """
        card, transition = self.validate_transition(card_key, transition_name)

        if self.guard is not None:
            await self.guard.check_permission("transition", card_key, transition_name)
            # The card may have moved on while the guard was solving
            card, transition = self.validate_transition(card_key, transition_name)

        updated = self.store.persist_card_state(card_key, transition.to_state)

        logger.info(f"Transition: {card_key} {card.workflow_state} → {transition.to_state} ({transition_name})")

        result = self.on_card_changed(updated)
        if inspect.isawaitable(result):
            await result
        return updated
