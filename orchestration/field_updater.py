"""
FIELD UPDATER
Writes back the field values that calculations request through the
onCreation and onTransition queries.

Updates are grouped per card. `title` and `workflowState` are set directly,
`cardType` and `rank` are never written by a calculation, and any other name
must be a known field type whose data type decides how the value is read.
A rejected update is logged and skipped; the rest of the batch still applies.
"""
import json
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from core.ontology import DataType, UserInputError
from core.protocols import FieldUpdate
from infrastructure.card_store import CardStore
from infrastructure.error_logger import ErrorLogger

logger = logging.getLogger("FieldUpdater")

CONTENT_ATTRIBUTES = {"title": "title"}
READ_ONLY_ATTRIBUTES = ("cardType", "rank")


class FieldUpdateError(UserInputError):
    """A calculation asked for a field update that cannot be applied."""
    pass


def convert_value(data_type: DataType, value: Any) -> Any:
    """Read a solver value as the field's data type."""
    if data_type == DataType.LIST:
        if isinstance(value, str):
            parsed = json.loads(value)
            if not isinstance(parsed, list):
                raise FieldUpdateError(f"Expected a list, got '{value}'")
            return [str(item) for item in parsed]
        return list(value)
    if data_type == DataType.BOOLEAN:
        return value is True or value == "true"
    if data_type == DataType.INTEGER:
        return int(float(value))
    if data_type == DataType.NUMBER:
        return float(value)
    return str(value)


class FieldUpdater:
    def __init__(self, store: CardStore, error_logger: Optional[ErrorLogger] = None):
        self.store = store
        self.error_logger = error_logger

    def _reject(self, update: FieldUpdate, message: str, cause: Optional[Exception] = None):
        error = FieldUpdateError(message)
        logger.error(f"Field update {update.card}.{update.field} skipped: {message}")
        if self.error_logger:
            self.error_logger.log_error(cause or error, card_key=update.card, action="updateField")

    def apply(self, updates: Iterable[FieldUpdate]) -> List[str]:
        """Apply updates grouped by card. Returns the keys of the cards that changed."""
        by_card: Dict[str, List[FieldUpdate]] = defaultdict(list)
        for update in updates:
            by_card[update.card].append(update)

        changed = []
        for card_key, card_updates in by_card.items():
            if self._apply_card(card_key, card_updates):
                changed.append(card_key)
        return changed

    def _apply_card(self, card_key: str, updates: List[FieldUpdate]) -> bool:
        if self.store.get_card(card_key) is None:
            for update in updates:
                self._reject(update, f"Card '{card_key}' does not exist")
            return False

        content: Dict[str, Any] = {}
        fields: Dict[str, Any] = {}
        new_state = None
        for update in updates:
            if update.field in CONTENT_ATTRIBUTES:
                content[CONTENT_ATTRIBUTES[update.field]] = str(update.new_value)
            elif update.field == "workflowState":
                new_state = str(update.new_value)
            elif update.field in READ_ONLY_ATTRIBUTES:
                self._reject(update, f"Cannot change '{update.field}' from a calculation")
            else:
                field_type = self.store.get_field_type(update.field)
                if field_type is None:
                    self._reject(update, f"Field type '{update.field}' does not exist")
                    continue
                try:
                    fields[update.field] = convert_value(field_type.data_type, update.new_value)
                except (ValueError, TypeError, FieldUpdateError) as e:
                    self._reject(update, f"Value '{update.new_value}' is not a valid {field_type.data_type.value}", e)

        if content:
            self.store.update_card(card_key, **content)
        if fields:
            self.store.update_card_fields(card_key, fields)
        if new_state is not None:
            self.store.persist_card_state(card_key, new_state)
        if content or fields or new_state is not None:
            logger.info(f"Calculated updates applied to {card_key}: {sorted([*content, *fields])}"
                        + (f", state {new_state}" if new_state is not None else ""))
            return True
        return False
