"""
GOVERNANCE - Action Guard
Enforces calculated permissions before a command mutates a card.

The guard asks the calculation engine for the card's computed view and
rejects the action if the matching denial bucket is not empty:
- transition: denials for the named transition
- editField: denials for the named field
- move / delete / editContent: any denial
"""
import logging
from enum import Enum
from typing import List, Optional, Union

from core.ontology import UserInputError
from core.protocols import CardResult, DeniedOperation
from orchestration.query_engine import QueryEngine

logger = logging.getLogger("Governance")


class Action(str, Enum):
    TRANSITION = "transition"
    MOVE = "move"
    DELETE = "delete"
    EDIT_FIELD = "editField"
    EDIT_CONTENT = "editContent"


class PermissionDeniedError(UserInputError):
    """The project's calculations deny the requested action."""
    status_code = 403

    def __init__(self, action: "Action", card_key: str, messages: List[str]):
        self.action = action
        self.card_key = card_key
        self.messages = list(messages)
        super().__init__("; ".join(self.messages))


class ActionGuard:
    """Pre-command hook that consults calculated denials."""

    def __init__(self, engine: QueryEngine):
        self.engine = engine

    @staticmethod
    def _action(action: Union[Action, str]) -> Action:
        try:
            return Action(action)
        except ValueError:
            raise ValueError(f"Action: {action} does not support checking permissions") from None

    @staticmethod
    def _denials(result: CardResult, action: Action, param: Optional[str]) -> List[DeniedOperation]:
        denied = result.denied_operations
        if action == Action.TRANSITION:
            return [d for d in denied.transition if d.transition_name == param]
        if action == Action.EDIT_FIELD:
            return [d for d in denied.edit_field if d.field_name == param]
        if action == Action.MOVE:
            return list(denied.move)
        if action == Action.DELETE:
            return list(denied.delete)
        return list(denied.edit_content)

    async def check_permission(
        self,
        action: Union[Action, str],
        card_key: str,
        param: Optional[str] = None
    ) -> None:
        """
        Raise PermissionDeniedError if the action is denied for the card.

        Args:
            action: One of Action (or its string value)
            card_key: Card the action targets
            param: Transition name for 'transition', field name for 'editField'

        Raises:
            ValueError: unsupported action
            QueryContractError: card query returned zero or several cards
            PermissionDeniedError: at least one matching denial
        """
        action = self._action(action)
        await self.engine.generate()
        response = await self.engine.run_card_query(card_key)

        denials = self._denials(response.results[0], action, param)
        if denials:
            messages = [d.error_message for d in denials]
            logger.info(f"DENIED: {action.value} on {card_key}: {'; '.join(messages)}")
            error = PermissionDeniedError(action, card_key, messages)
            if self.engine.error_logger:
                self.engine.error_logger.log_error(error, card_key=card_key, action=action.value)
            raise error
