"""
CARD ONTOLOGY - The Shape of a Project

This module defines the declarative schema of a card project: cards, card
types, workflows, field types, link types and calculations. The calculation
engine READS these models; it never mutates them.

Key Principles:
1. A Card references exactly one CardType, a CardType exactly one Workflow
2. Workflows own their transitions; "*" in fromState matches any state
3. Resource stores are collaborators, described here as a Protocol
4. Errors carry a status class so front ends can tell 400 from 500
"""
from pydantic import BaseModel, Field, model_validator
from typing import Dict, List, Optional, Union, Protocol
from enum import Enum


WILDCARD_STATE = "*"


# =============================================================================
# ERROR BASES
# =============================================================================

class CardEngineError(Exception):
    """Base class for every error raised by the calculation engine."""
    status_code = 500


class UserInputError(CardEngineError):
    """Caller can fix this by changing the request."""
    status_code = 400


class InternalConsistencyError(CardEngineError):
    """The project data or the engine itself is inconsistent."""
    status_code = 500


# =============================================================================
# ENUMS
# =============================================================================

class WorkflowCategory(str, Enum):
    """Lifecycle category of a workflow state."""
    INITIAL = "initial"
    ACTIVE = "active"
    CLOSED = "closed"
    NONE = "none"


class DataType(str, Enum):
    """Supported custom field data types."""
    SHORT_TEXT = "shortText"
    LONG_TEXT = "longText"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ENUM = "enum"
    LIST = "list"
    DATE = "date"
    DATE_TIME = "dateTime"
    PERSON = "person"


class FieldVisibility(str, Enum):
    """How a card type presents one of its custom fields."""
    ALWAYS = "always"
    OPTIONAL = "optional"
    HIDDEN = "hidden"


# =============================================================================
# RESOURCES
# =============================================================================

class WorkflowState(BaseModel):
    name: str
    category: Optional[WorkflowCategory] = None


class WorkflowTransition(BaseModel):
    name: str
    from_state: List[str] = Field(
        default_factory=list,
        alias="fromState",
        description="States the transition can start from; '*' means any state"
    )
    to_state: str = Field(alias="toState")

    model_config = {"populate_by_name": True}

    def allows_from(self, state: Optional[str]) -> bool:
        """True if this transition can be taken from `state`."""
        return WILDCARD_STATE in self.from_state or (
            state is not None and state in self.from_state
        )


class Workflow(BaseModel):
    """
    Named state set plus transitions between the states.

    Every state must be reachable: it is the initial (first) state, or it
    appears as a source or target of some transition.
    """
    name: str
    states: List[WorkflowState]
    transitions: List[WorkflowTransition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_states(self) -> "Workflow":
        if not self.states:
            raise ValueError(f"Workflow '{self.name}' has no states")
        names = {s.name for s in self.states}
        referenced = {self.states[0].name}
        for transition in self.transitions:
            if transition.to_state not in names:
                raise ValueError(
                    f"Workflow '{self.name}' transition '{transition.name}' "
                    f"targets unknown state '{transition.to_state}'"
                )
            referenced.add(transition.to_state)
            referenced.update(transition.from_state)
        if WILDCARD_STATE not in referenced:
            unreachable = sorted(names - referenced)
            if unreachable:
                raise ValueError(
                    f"Workflow '{self.name}' has unreachable states: {unreachable}"
                )
        return self

    @property
    def initial_state(self) -> WorkflowState:
        return self.states[0]

    def state(self, name: str) -> Optional[WorkflowState]:
        for state in self.states:
            if state.name == name:
                return state
        return None

    def transition(self, name: str) -> Optional[WorkflowTransition]:
        for transition in self.transitions:
            if transition.name == name:
                return transition
        return None


class CustomField(BaseModel):
    name: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    description: Optional[str] = None
    is_editable: bool = Field(default=True, alias="isEditable")
    is_calculated: bool = Field(default=False, alias="isCalculated")

    model_config = {"populate_by_name": True}


class CardType(BaseModel):
    name: str
    workflow: str
    custom_fields: List[CustomField] = Field(default_factory=list, alias="customFields")
    always_visible_fields: List[str] = Field(default_factory=list, alias="alwaysVisibleFields")
    optionally_visible_fields: List[str] = Field(default_factory=list, alias="optionallyVisibleFields")

    model_config = {"populate_by_name": True}

    def visibility(self, field_name: str) -> FieldVisibility:
        if field_name in self.always_visible_fields:
            return FieldVisibility.ALWAYS
        if field_name in self.optionally_visible_fields:
            return FieldVisibility.OPTIONAL
        return FieldVisibility.HIDDEN


class EnumDefinition(BaseModel):
    enum_value: str = Field(alias="enumValue")
    enum_display_value: Optional[str] = Field(default=None, alias="enumDisplayValue")
    enum_description: Optional[str] = Field(default=None, alias="enumDescription")

    model_config = {"populate_by_name": True}


class FieldType(BaseModel):
    name: str
    data_type: DataType = Field(alias="dataType")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    field_description: Optional[str] = Field(default=None, alias="fieldDescription")
    enum_values: List[EnumDefinition] = Field(default_factory=list, alias="enumValues")
    inherited: bool = Field(
        default=False,
        description="Cards without a value take the value of their nearest ancestor"
    )

    model_config = {"populate_by_name": True}


class LinkType(BaseModel):
    name: str
    outbound_display_name: str = Field(alias="outboundDisplayName")
    inbound_display_name: str = Field(alias="inboundDisplayName")
    source_card_types: List[str] = Field(default_factory=list, alias="sourceCardTypes")
    destination_card_types: List[str] = Field(default_factory=list, alias="destinationCardTypes")
    enable_link_description: bool = Field(default=False, alias="enableLinkDescription")

    model_config = {"populate_by_name": True}


class Calculation(BaseModel):
    """User supplied logic program rules (policies, denials, notifications)."""
    name: str
    program: str


# =============================================================================
# CARDS
# =============================================================================

FieldValue = Union[str, int, float, bool, List[str], None]


class Link(BaseModel):
    link_type: str = Field(alias="linkType")
    card_key: str = Field(alias="cardKey")
    link_description: Optional[str] = Field(default=None, alias="linkDescription")

    model_config = {"populate_by_name": True}


class Card(BaseModel):
    """A single structured record in the project's card tree."""
    key: str
    card_type: str = Field(alias="cardType")
    workflow_state: str = Field(alias="workflowState")
    title: str = ""
    rank: str = ""
    parent: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    links: List[Link] = Field(default_factory=list)
    fields: Dict[str, FieldValue] = Field(
        default_factory=dict,
        description="Custom field values keyed by field type name"
    )
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    last_transitioned: Optional[str] = Field(default=None, alias="lastTransitioned")

    model_config = {"populate_by_name": True}


# =============================================================================
# COLLABORATOR INTERFACE
# =============================================================================

class ResourceStore(Protocol):
    """What the engine needs from the project's card and resource storage."""

    prefix: str

    def list_cards(self) -> List[Card]: ...

    def get_card(self, key: str) -> Optional[Card]: ...

    def get_card_type(self, name: str) -> Optional[CardType]: ...

    def get_workflow(self, name: str) -> Optional[Workflow]: ...

    def get_field_type(self, name: str) -> Optional[FieldType]: ...

    def get_link_type(self, name: str) -> Optional[LinkType]: ...

    def list_card_types(self) -> List[CardType]: ...

    def list_workflows(self) -> List[Workflow]: ...

    def list_field_types(self) -> List[FieldType]: ...

    def list_link_types(self) -> List[LinkType]: ...

    def list_calculations(self) -> List[Calculation]: ...

    def persist_card_state(self, key: str, new_state: str) -> Card: ...
