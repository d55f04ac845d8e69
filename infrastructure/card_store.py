"""
CARD STORE (In-Memory, Optional JSON Persistence)
Features: Card Tree on networkx, Atomic Persistence, YAML Project Loader.

Implements the ResourceStore protocol used by the calculation engine. The
card hierarchy is a DiGraph with parent -> child edges; each node carries the
Card model under the "card" attribute.
"""
import networkx as nx
import logging
import datetime
import json
import hashlib
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from core.ontology import (
    Calculation, Card, CardType, FieldType, LinkType, UserInputError, Workflow,
)
from core.state_machine import CardNotFoundError

# Schema version for persistence format
SCHEMA_VERSION = "1.0"

# Changed only through move_card, persist_card_state or not at all
PROTECTED_ATTRIBUTES = ("key", "parent", "workflow_state")


class CardStoreError(UserInputError):
    """Rejected card mutation (duplicate key, cycle, unknown parent)."""
    pass


def now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")


class CardStore:
    def __init__(self, prefix: str, persistence_path: Optional[str] = None):
        self.logger = logging.getLogger("CardStore")
        self.prefix = prefix
        self.persistence_path = persistence_path
        self.graph = nx.DiGraph()
        self.workflows: Dict[str, Workflow] = {}
        self.card_types: Dict[str, CardType] = {}
        self.field_types: Dict[str, FieldType] = {}
        self.link_types: Dict[str, LinkType] = {}
        self.calculations: Dict[str, Calculation] = {}
        # Per-store counter, never shared between projects
        self._next_ordinal = 1
        if persistence_path:
            self._load()

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _calculate_checksum(self, data: Any) -> str:
        """Calculate SHA256 checksum of store data."""
        serialized = json.dumps(data, sort_keys=True)
        return hashlib.sha256(serialized.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prefix": self.prefix,
            "nextOrdinal": self._next_ordinal,
            "workflows": [w.model_dump(by_alias=True, mode="json") for w in self.workflows.values()],
            "cardTypes": [c.model_dump(by_alias=True, mode="json") for c in self.card_types.values()],
            "fieldTypes": [f.model_dump(by_alias=True, mode="json") for f in self.field_types.values()],
            "linkTypes": [l.model_dump(by_alias=True, mode="json") for l in self.link_types.values()],
            "calculations": [c.model_dump(mode="json") for c in self.calculations.values()],
            "cards": [c.model_dump(by_alias=True, mode="json") for c in self.list_cards()],
        }

    def _persist(self):
        """Atomic write to disk. No-op for purely in-memory stores."""
        if not self.persistence_path:
            return
        temp_path = self.persistence_path + ".tmp"
        project = self.to_dict()
        data = {
            "version": SCHEMA_VERSION,
            "timestamp": now_iso(),
            "project": project,
            "checksum": self._calculate_checksum(project),
        }
        with open(temp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(temp_path, self.persistence_path)

    def _load(self):
        """Load state on startup. A corrupted file is an error, a missing one is not."""
        if not os.path.exists(self.persistence_path):
            self.logger.info("No existing card store found, starting fresh")
            return
        with open(self.persistence_path, "r") as f:
            data = json.load(f)

        version = data.get("version", "unknown")
        if version != SCHEMA_VERSION:
            self.logger.warning(f"Schema version mismatch: {version} != {SCHEMA_VERSION}")
        if "checksum" in data and data["checksum"] != self._calculate_checksum(data["project"]):
            raise CardStoreError(f"Checksum mismatch in {self.persistence_path}, store may be corrupted")

        self._populate(data["project"])
        self.logger.info(f"Loaded card store: {self.graph.number_of_nodes()} cards")

    def _populate(self, project: Dict[str, Any]):
        for raw in project.get("workflows", []):
            self.add_workflow(Workflow.model_validate(raw))
        for raw in project.get("cardTypes", []):
            self.add_card_type(CardType.model_validate(raw))
        for raw in project.get("fieldTypes", []):
            self.add_field_type(FieldType.model_validate(raw))
        for raw in project.get("linkTypes", []):
            self.add_link_type(LinkType.model_validate(raw))
        for raw in project.get("calculations", []):
            self.add_calculation(Calculation.model_validate(raw))

        # Cards may be listed before their parents; insert first, then link
        cards = [Card.model_validate(raw) for raw in project.get("cards", [])]
        for card in cards:
            if card.key in self.graph:
                raise CardStoreError(f"Duplicate card key: {card.key}")
            self.graph.add_node(card.key, card=card)
            self._bump_ordinal(card.key)
        for card in cards:
            if card.parent:
                if card.parent not in self.graph:
                    raise CardStoreError(f"Card '{card.key}' has unknown parent '{card.parent}'")
                self.graph.add_edge(card.parent, card.key)
        if not nx.is_directed_acyclic_graph(self.graph):
            raise CardStoreError("Card hierarchy contains a cycle")
        self._next_ordinal = max(self._next_ordinal, project.get("nextOrdinal", 1))

    @classmethod
    def from_dict(cls, project: Dict[str, Any], persistence_path: Optional[str] = None) -> "CardStore":
        store = cls(project["prefix"])
        store._populate(project)
        store.persistence_path = persistence_path
        store._persist()
        return store

    @classmethod
    def from_yaml(cls, path: Union[str, Path], persistence_path: Optional[str] = None) -> "CardStore":
        """Load a project description (resources and cards) from YAML."""
        with open(path, "r") as f:
            project = yaml.safe_load(f)
        if not isinstance(project, dict) or "prefix" not in project:
            raise CardStoreError(f"Project file {path} has no 'prefix'")
        return cls.from_dict(project, persistence_path)

    # =========================================================================
    # RESOURCES
    # =========================================================================

    def add_workflow(self, workflow: Workflow):
        self.workflows[workflow.name] = workflow
        self._persist()

    def add_card_type(self, card_type: CardType):
        self.card_types[card_type.name] = card_type
        self._persist()

    def add_field_type(self, field_type: FieldType):
        self.field_types[field_type.name] = field_type
        self._persist()

    def add_link_type(self, link_type: LinkType):
        self.link_types[link_type.name] = link_type
        self._persist()

    def add_calculation(self, calculation: Calculation):
        self.calculations[calculation.name] = calculation
        self._persist()

    def get_workflow(self, name: str) -> Optional[Workflow]:
        return self.workflows.get(name)

    def get_card_type(self, name: str) -> Optional[CardType]:
        return self.card_types.get(name)

    def get_field_type(self, name: str) -> Optional[FieldType]:
        return self.field_types.get(name)

    def get_link_type(self, name: str) -> Optional[LinkType]:
        return self.link_types.get(name)

    def list_workflows(self) -> List[Workflow]:
        return list(self.workflows.values())

    def list_card_types(self) -> List[CardType]:
        return list(self.card_types.values())

    def list_field_types(self) -> List[FieldType]:
        return list(self.field_types.values())

    def list_link_types(self) -> List[LinkType]:
        return list(self.link_types.values())

    def list_calculations(self) -> List[Calculation]:
        return list(self.calculations.values())

    # =========================================================================
    # CARDS
    # =========================================================================

    def _bump_ordinal(self, key: str):
        head, _, ordinal = key.rpartition("_")
        if head == self.prefix and ordinal.isdigit():
            self._next_ordinal = max(self._next_ordinal, int(ordinal) + 1)

    def _require(self, key: str) -> Card:
        if key not in self.graph:
            raise CardNotFoundError(f"Card '{key}' does not exist")
        return self.graph.nodes[key]["card"]

    def _replace(self, card: Card):
        self.graph.nodes[card.key]["card"] = card

    def list_cards(self) -> List[Card]:
        return [self.graph.nodes[key]["card"] for key in sorted(self.graph.nodes)]

    def get_card(self, key: str) -> Optional[Card]:
        if key not in self.graph:
            return None
        return self.graph.nodes[key]["card"]

    def children(self, key: str) -> List[Card]:
        self._require(key)
        return [self.graph.nodes[c]["card"] for c in sorted(self.graph.successors(key))]

    def add_card(self, card: Card) -> Card:
        if card.key in self.graph:
            raise CardStoreError(f"Card '{card.key}' already exists")
        if card.parent and card.parent not in self.graph:
            raise CardStoreError(f"Cannot add card '{card.key}' under unknown parent '{card.parent}'")
        self.graph.add_node(card.key, card=card)
        if card.parent:
            self.graph.add_edge(card.parent, card.key)
        self._bump_ordinal(card.key)
        self._persist()
        self.logger.info(f"Card Created: {card.key} ({card.card_type})")
        return card

    def create_card(
        self,
        card_type: str,
        parent: Optional[str] = None,
        title: str = "",
        fields: Optional[Dict[str, Any]] = None,
        labels: Optional[List[str]] = None
    ) -> Card:
        """Create a card of `card_type` in its workflow's initial state."""
        resolved = self.get_card_type(card_type)
        if resolved is None:
            raise CardStoreError(f"Unknown card type '{card_type}'")
        workflow = self.get_workflow(resolved.workflow)
        if workflow is None:
            raise CardStoreError(f"Card type '{card_type}' references unknown workflow '{resolved.workflow}'")
        ordinal = self._next_ordinal
        timestamp = now_iso()
        card = Card(
            key=f"{self.prefix}_{ordinal}",
            card_type=card_type,
            workflow_state=workflow.initial_state.name,
            title=title,
            rank=f"0|{ordinal:06d}",
            parent=parent,
            labels=list(labels or []),
            fields=dict(fields or {}),
            last_updated=timestamp,
        )
        return self.add_card(card)

    def _field_names(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve aliases (workflowState) to attribute names (workflow_state)."""
        aliases = {info.alias: name for name, info in Card.model_fields.items() if info.alias}
        resolved = {}
        for name, value in changes.items():
            attr = aliases.get(name, name)
            if attr not in Card.model_fields:
                raise CardStoreError(f"Unknown card attribute '{name}'")
            resolved[attr] = value
        return resolved

    def update_card(self, key: str, **changes) -> Card:
        """Replace top-level attributes of a card (title, labels, links, rank...)."""
        card = self._require(key)
        changes = self._field_names(changes)
        for protected in PROTECTED_ATTRIBUTES:
            if protected in changes:
                raise CardStoreError(f"Use the dedicated operation to change '{protected}'")
        try:
            updated = Card.model_validate({**card.model_dump(), **changes, "last_updated": now_iso()})
        except ValidationError as e:
            raise CardStoreError(f"Invalid update of card '{key}': {e}") from e
        self._replace(updated)
        self._persist()
        return updated

    def update_card_fields(self, key: str, fields: Dict[str, Any]) -> Card:
        """Merge custom field values. A value of None clears the field."""
        card = self._require(key)
        merged = dict(card.fields)
        for name, value in fields.items():
            if value is None:
                merged.pop(name, None)
            else:
                merged[name] = value
        return self.update_card(key, fields=merged)

    def move_card(self, key: str, new_parent: Optional[str]) -> Card:
        card = self._require(key)
        if new_parent is not None:
            self._require(new_parent)
            if new_parent == key or nx.has_path(self.graph, key, new_parent):
                raise CardStoreError(f"Cycle detected! Cannot move {key} under {new_parent}")
        if card.parent:
            self.graph.remove_edge(card.parent, key)
        if new_parent:
            self.graph.add_edge(new_parent, key)
        moved = card.model_copy(update={"parent": new_parent, "last_updated": now_iso()})
        self._replace(moved)
        self._persist()
        self.logger.info(f"Card Moved: {key} -> {new_parent or 'root'}")
        return moved

    def subtree(self, key: str) -> List[str]:
        """The card followed by its descendants."""
        self._require(key)
        return [key] + sorted(nx.descendants(self.graph, key))

    def linking_cards(self, keys) -> List[str]:
        """Cards outside `keys` that hold a link to one of them."""
        targets = set(keys)
        return [
            card.key for card in self.list_cards()
            if card.key not in targets and any(link.card_key in targets for link in card.links)
        ]

    def remove_card(self, key: str) -> List[str]:
        """
        Remove a card and its whole subtree. Returns the removed keys.

        Links from the remaining cards into the removed subtree are dropped
        with it, so no card is left pointing at a missing key.
        """
        removed = self.subtree(key)
        linking = self.linking_cards(removed)
        self.graph.remove_nodes_from(removed)
        gone = set(removed)
        stamp = now_iso()
        for source in linking:
            card = self.graph.nodes[source]["card"]
            links = [link for link in card.links if link.card_key not in gone]
            self._replace(card.model_copy(update={"links": links, "last_updated": stamp}))
        self._persist()
        self.logger.info(
            f"Card Removed: {key} ({len(removed) - 1} descendants, links dropped from {len(linking)} cards)"
        )
        return removed

    def persist_card_state(self, key: str, new_state: str) -> Card:
        card = self._require(key)
        timestamp = now_iso()
        updated = card.model_copy(update={
            "workflow_state": new_state,
            "last_updated": timestamp,
            "last_transitioned": timestamp,
        })
        self._replace(updated)
        self._persist()
        self.logger.info(f"State: {key} {card.workflow_state} → {new_state}")
        return updated
