"""
QUERY RESULT PROTOCOLS

Typed contracts for the results of named queries. Each QueryName maps to
exactly one result shape; the ResultProjector builds raw dictionaries from
solver atoms and validates them into these models.

Usage:
    shape = QUERY_SHAPES[QueryName.CARD]
    result = shape.model_validate(raw)

    # Wire format uses camelCase
    payload = result.model_dump(by_alias=True)
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional, Set, Type, Union
from enum import Enum

from core.ontology import DataType, FieldVisibility, WorkflowCategory


class QueryName(str, Enum):
    """Closed set of named queries. Each one has a template and a shape."""
    TREE = "tree"
    CARD = "card"
    ON_CREATION = "onCreation"
    ON_TRANSITION = "onTransition"


# =============================================================================
# ATOMIC BUILDING BLOCKS
# =============================================================================

class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CalculationLink(_Wire):
    key: str = Field(description="Card on the other end of the link")
    link_type: str = Field(alias="linkType")
    display_name: str = Field(alias="displayName")
    direction: str = Field(default="outbound", description="'outbound' or 'inbound'")
    link_description: Optional[str] = Field(default=None, alias="linkDescription")


class Notification(_Wire):
    category: str
    title: str
    message: str


class PolicyCheckSuccess(_Wire):
    test_suite: str = Field(alias="testSuite")
    test_case: str = Field(alias="testCase")


class PolicyCheckFailure(PolicyCheckSuccess):
    error_message: str = Field(alias="errorMessage")


class PolicyCheckCollection(_Wire):
    successes: List[PolicyCheckSuccess] = Field(default_factory=list)
    failures: List[PolicyCheckFailure] = Field(default_factory=list)


class DeniedOperation(_Wire):
    error_message: str = Field(alias="errorMessage")

    @field_validator("error_message")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Denied operation without an error message")
        return value


class DeniedTransition(DeniedOperation):
    transition_name: str = Field(alias="transitionName")


class DeniedFieldEdit(DeniedOperation):
    field_name: str = Field(alias="fieldName")


class DeniedOperationCollection(_Wire):
    transition: List[DeniedTransition] = Field(default_factory=list)
    move: List[DeniedOperation] = Field(default_factory=list)
    delete: List[DeniedOperation] = Field(default_factory=list)
    edit_field: List[DeniedFieldEdit] = Field(default_factory=list, alias="editField")
    edit_content: List[DeniedOperation] = Field(default_factory=list, alias="editContent")


class EnumOption(_Wire):
    value: str
    display_value: str = Field(alias="displayValue")
    index: int


class FieldDetail(_Wire):
    """One custom field of a card, with its type information expanded."""
    name: str
    display_name: str = Field(alias="displayName")
    data_type: DataType = Field(alias="dataType")
    visibility: FieldVisibility = FieldVisibility.HIDDEN
    index: Optional[int] = None
    is_editable: bool = Field(default=True, alias="isEditable")
    inherited: bool = False
    value: Union[bool, int, str, List[Union[int, str]], None] = None
    display_value: Optional[str] = Field(
        default=None,
        alias="displayValue",
        description="Display value of the selected enum option"
    )
    enum_options: List[EnumOption] = Field(default_factory=list, alias="enumOptions")


# =============================================================================
# RESULT SHAPES
# =============================================================================

class BaseResult(_Wire):
    """Computed envelope shared by every query shape, one per card."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    key: str
    labels: Set[str] = Field(default_factory=set)
    links: List[CalculationLink] = Field(default_factory=list)
    notifications: List[Notification] = Field(default_factory=list)
    policy_checks: PolicyCheckCollection = Field(
        default_factory=PolicyCheckCollection, alias="policyChecks"
    )
    denied_operations: DeniedOperationCollection = Field(
        default_factory=DeniedOperationCollection, alias="deniedOperations"
    )


class TreeResult(BaseResult):
    rank: str = ""
    title: str = ""
    card_type: Optional[str] = Field(default=None, alias="cardType")
    workflow_state_category: Optional[WorkflowCategory] = Field(
        default=None, alias="workflowStateCategory"
    )
    children: List["TreeResult"] = Field(default_factory=list)


class CardResult(BaseResult):
    rank: str = ""
    title: str = ""
    card_type: Optional[str] = Field(default=None, alias="cardType")
    workflow_state: str = Field(alias="workflowState")
    workflow_state_category: Optional[WorkflowCategory] = Field(
        default=None, alias="workflowStateCategory"
    )
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    fields: List[FieldDetail] = Field(default_factory=list)

    def field(self, name: str) -> Optional[FieldDetail]:
        for detail in self.fields:
            if detail.name == name:
                return detail
        return None


TreeResult.model_rebuild()


class FieldUpdate(_Wire):
    """A field value a calculation wants written back to a card."""
    card: str
    field: str
    new_value: Any = Field(alias="newValue")


class ChangesResult(_Wire):
    """Single envelope of the onCreation / onTransition queries."""
    key: str
    update_fields: List[FieldUpdate] = Field(default_factory=list, alias="updateFields")


QueryResult = Union[TreeResult, CardResult, ChangesResult]

QUERY_SHAPES: Dict[QueryName, Type[_Wire]] = {
    QueryName.TREE: TreeResult,
    QueryName.CARD: CardResult,
    QueryName.ON_CREATION: ChangesResult,
    QueryName.ON_TRANSITION: ChangesResult,
}

assert set(QUERY_SHAPES) == set(QueryName), "Every query needs a result shape"


class QueryResponse(BaseModel):
    """What run_query hands back: typed results or the query's own error."""
    query: QueryName
    results: List[QueryResult] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.results)
