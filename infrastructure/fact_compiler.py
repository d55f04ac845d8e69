"""
FACT COMPILER
Translates project resources and cards into logic program facts.

Every unit (a card, a workflow, a card type, ...) becomes one program in the
SolverGateway, registered under the project category. Only stale units are
recompiled, and a program is handed to the gateway only when its text
actually changed.

Program keys: "<prefix>:<kind>/<name>", e.g. "proj:card/proj_1".
"""
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

import networkx as nx

from core.ontology import (
    Calculation, Card, CardType, FieldType, InternalConsistencyError,
    LinkType, ResourceStore, Workflow,
)
from infrastructure.solver_gateway import SolverGateway

logger = logging.getLogger("FactCompiler")

RULES_DIR = Path(__file__).parent / "rules"

# Unit kinds, in compile order
RULES = "rules"
PROJECT = "project"
WORKFLOW = "workflow"
CARD_TYPE = "cardType"
FIELD_TYPE = "fieldType"
LINK_TYPE = "linkType"
CALCULATION = "calculation"
CARD = "card"

RESOURCE_KINDS = (WORKFLOW, CARD_TYPE, FIELD_TYPE, LINK_TYPE, CALCULATION)
UNIT_KINDS = (RULES, PROJECT) + RESOURCE_KINDS + (CARD,)

Unit = Tuple[str, str]


# =============================================================================
# ERRORS
# =============================================================================

@dataclass
class CompilationFailure:
    kind: str
    name: str
    reason: str

    @property
    def card_key(self) -> Optional[str]:
        return self.name if self.kind == CARD else None


class CompilationError(InternalConsistencyError):
    """One or more units could not be compiled. They stay stale."""

    def __init__(self, failures: List[CompilationFailure]):
        self.failures = list(failures)
        details = "; ".join(f.reason for f in self.failures)
        super().__init__(f"Compilation failed for {len(self.failures)} unit(s): {details}")

    @property
    def card_key(self) -> Optional[str]:
        """The first offending card, if any card failed."""
        for failure in self.failures:
            if failure.card_key:
                return failure.card_key
        return None

    @property
    def card_keys(self) -> List[str]:
        return [f.card_key for f in self.failures if f.card_key]


class _UnitError(Exception):
    """Internal: a single unit failed validation."""


# =============================================================================
# PROGRAM BUILDER
# =============================================================================

def escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def term(value) -> str:
    """Render a Python value as a logic program term."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, tuple):
        return "(" + ", ".join(term(v) for v in value) + ")"
    return f'"{escape(str(value))}"'


class ProgramBuilder:
    """Accumulates facts and comments into program text."""

    def __init__(self):
        self._lines: List[str] = []

    def comment(self, text: str) -> "ProgramBuilder":
        for line in text.splitlines() or [""]:
            self._lines.append(f"% {line}")
        return self

    def fact(self, predicate: str, *args) -> "ProgramBuilder":
        self._lines.append(f"{predicate}({', '.join(term(a) for a in args)}).")
        return self

    def field(self, subject, name: str, value) -> "ProgramBuilder":
        return self.fact("field", subject, name, value)

    def blank(self) -> "ProgramBuilder":
        self._lines.append("")
        return self

    def raw(self, text: str) -> "ProgramBuilder":
        self._lines.append(text)
        return self

    def build(self) -> str:
        return "\n".join(self._lines) + "\n"


# =============================================================================
# COMPILE REPORT
# =============================================================================

@dataclass
class CompileReport:
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def changed(self) -> bool:
        return bool(self.updated or self.removed)


# =============================================================================
# COMPILER
# =============================================================================

class FactCompiler:
    """
    Incremental compiler from a ResourceStore into SolverGateway programs.

    Not thread-safe on its own; the QueryEngine serialises calls to
    generate() and invalidate*() with the write side of its lock.
    """

    def __init__(
        self,
        store: ResourceStore,
        gateway: SolverGateway,
        rules_dir: Path = RULES_DIR
    ):
        self.store = store
        self.gateway = gateway
        self.rules_dir = Path(rules_dir)
        self._compiled: Dict[Unit, str] = {}
        self._stale: Set[Unit] = set()
        self._initialized = False
        # parent -> child edges as last compiled; used to cascade removals
        self._tree = nx.DiGraph()

    @property
    def category(self) -> str:
        return self.store.prefix

    def program_key(self, kind: str, name: str) -> str:
        return f"{self.category}:{kind}/{name}"

    # =========================================================================
    # STALENESS
    # =========================================================================

    def invalidate(self, card_key: str):
        """Mark one card stale. A vanished card takes its compiled subtree with it."""
        self._stale.add((CARD, card_key))
        if self.store.get_card(card_key) is None and card_key in self._tree:
            for descendant in nx.descendants(self._tree, card_key):
                self._stale.add((CARD, descendant))

    def invalidate_resource(self, kind: str, name: str):
        if kind not in RESOURCE_KINDS:
            raise ValueError(f"Unknown resource kind: {kind}")
        self._stale.add((kind, name))

    def invalidate_all(self):
        self._initialized = False

    def has_stale(self) -> bool:
        return not self._initialized or bool(self._stale)

    def is_stale(self, card_key: str) -> bool:
        return not self._initialized or (CARD, card_key) in self._stale

    # =========================================================================
    # GENERATION
    # =========================================================================

    def _all_units(self) -> List[Unit]:
        units: List[Unit] = [(RULES, "base"), (PROJECT, self.store.prefix)]
        units += [(WORKFLOW, w.name) for w in self.store.list_workflows()]
        units += [(CARD_TYPE, c.name) for c in self.store.list_card_types()]
        units += [(FIELD_TYPE, f.name) for f in self.store.list_field_types()]
        units += [(LINK_TYPE, l.name) for l in self.store.list_link_types()]
        units += [(CALCULATION, c.name) for c in self.store.list_calculations()]
        units += [(CARD, c.key) for c in self.store.list_cards()]
        return units

    def generate(self) -> CompileReport:
        """
        Compile every stale unit (everything on first call).

        Returns:
            CompileReport listing updated, removed and unchanged program keys

        Raises:
            CompilationError: after all other units were compiled, naming
            every unit that failed
        """
        started = time.perf_counter()
        report = CompileReport()
        full = not self._initialized
        if full:
            units = self._all_units()
            expected = set(units)
            vanished = [unit for unit in self._compiled if unit not in expected]
        else:
            units = list(self._stale)
            vanished = []

        if not units and not vanished:
            return report

        order = {kind: i for i, kind in enumerate(UNIT_KINDS)}
        units.sort(key=lambda u: (order[u[0]], u[1]))

        failures: List[CompilationFailure] = []
        failed: Set[Unit] = set()
        for unit in units:
            kind, name = unit
            key = self.program_key(kind, name)
            try:
                text = self._compile_unit(kind, name)
            except _UnitError as e:
                logger.error(f"Cannot compile {key}: {e}")
                failures.append(CompilationFailure(kind, name, str(e)))
                failed.add(unit)
                continue

            if text is None:
                self._remove(unit, report)
            elif self._compiled.get(unit) == text:
                report.unchanged.append(key)
            else:
                self.gateway.set_program(key, text, [self.category])
                self._compiled[unit] = text
                report.updated.append(key)

        for unit in vanished:
            self._remove(unit, report)

        self._stale = failed
        self._initialized = True
        report.duration_ms = (time.perf_counter() - started) * 1000
        logger.debug(
            f"Generated {len(report.updated)} updated, {len(report.removed)} removed, "
            f"{len(report.unchanged)} unchanged in {report.duration_ms:.1f}ms"
        )
        if failures:
            raise CompilationError(failures)
        return report

    def _remove(self, unit: Unit, report: CompileReport):
        kind, name = unit
        if kind == CARD and name in self._tree:
            self._tree.remove_node(name)
        if unit in self._compiled:
            key = self.program_key(kind, name)
            self.gateway.remove_program(key)
            del self._compiled[unit]
            report.removed.append(key)

    def _compile_unit(self, kind: str, name: str) -> Optional[str]:
        """Program text for one unit, or None when the unit no longer exists."""
        if kind == RULES:
            return (self.rules_dir / f"{name}.lp").read_text()
        if kind == PROJECT:
            return ProgramBuilder().fact("project", name).build()
        if kind == CARD:
            card = self.store.get_card(name)
            return self._compile_card(card) if card else None

        getters: Dict[str, Tuple[Callable, Callable]] = {
            WORKFLOW: (self.store.get_workflow, self._compile_workflow),
            CARD_TYPE: (self.store.get_card_type, self._compile_card_type),
            FIELD_TYPE: (self.store.get_field_type, self._compile_field_type),
            LINK_TYPE: (self.store.get_link_type, self._compile_link_type),
            CALCULATION: (self._get_calculation, self._compile_calculation),
        }
        getter, compile_fn = getters[kind]
        resource = getter(name)
        return compile_fn(resource) if resource else None

    def _get_calculation(self, name: str) -> Optional[Calculation]:
        for calculation in self.store.list_calculations():
            if calculation.name == name:
                return calculation
        return None

    # =========================================================================
    # UNIT COMPILERS
    # =========================================================================

    def _compile_workflow(self, workflow: Workflow) -> str:
        b = ProgramBuilder().comment(f"workflow {workflow.name}")
        b.fact("workflow", workflow.name)
        for state in workflow.states:
            b.fact("workflowState", workflow.name, state.name)
            if state.category:
                b.fact("workflowState", workflow.name, state.name, state.category.value)
        for transition in workflow.transitions:
            for from_state in transition.from_state:
                b.fact("workflowTransition", workflow.name, transition.name, from_state, transition.to_state)
        return b.build()

    def _compile_card_type(self, card_type: CardType) -> str:
        if self.store.get_workflow(card_type.workflow) is None:
            raise _UnitError(
                f"Card type '{card_type.name}' references unknown workflow '{card_type.workflow}'"
            )
        b = ProgramBuilder().comment(f"card type {card_type.name}")
        b.fact("cardType", card_type.name)
        b.field(card_type.name, "workflow", card_type.workflow)
        for index, custom in enumerate(card_type.custom_fields):
            if self.store.get_field_type(custom.name) is None:
                raise _UnitError(
                    f"Card type '{card_type.name}' references unknown field type '{custom.name}'"
                )
            subject = (card_type.name, custom.name)
            b.fact("customField", card_type.name, custom.name)
            b.field(subject, "index", index)
            b.field(subject, "isEditable", custom.is_editable and not custom.is_calculated)
            if custom.display_name:
                b.field(subject, "displayName", custom.display_name)
            if custom.description:
                b.field(subject, "description", custom.description)
        for name in card_type.always_visible_fields:
            b.fact("alwaysVisibleField", card_type.name, name)
        for name in card_type.optionally_visible_fields:
            b.fact("optionallyVisibleField", card_type.name, name)
        return b.build()

    def _compile_field_type(self, field_type: FieldType) -> str:
        b = ProgramBuilder().comment(f"field type {field_type.name}")
        b.fact("fieldType", field_type.name)
        b.field(field_type.name, "dataType", field_type.data_type.value)
        b.field(field_type.name, "inherited", field_type.inherited)
        if field_type.display_name:
            b.field(field_type.name, "displayName", field_type.display_name)
        if field_type.field_description:
            b.field(field_type.name, "fieldDescription", field_type.field_description)
        for index, enum in enumerate(field_type.enum_values):
            subject = (field_type.name, enum.enum_value)
            b.fact("enumValue", field_type.name, enum.enum_value)
            b.field(subject, "index", index)
            if enum.enum_display_value:
                b.field(subject, "enumDisplayValue", enum.enum_display_value)
            if enum.enum_description:
                b.field(subject, "enumDescription", enum.enum_description)
        return b.build()

    def _compile_link_type(self, link_type: LinkType) -> str:
        b = ProgramBuilder().comment(f"link type {link_type.name}")
        b.fact("linkType", link_type.name)
        b.field(link_type.name, "outboundDisplayName", link_type.outbound_display_name)
        b.field(link_type.name, "inboundDisplayName", link_type.inbound_display_name)
        b.field(link_type.name, "enableLinkDescription", link_type.enable_link_description)
        for card_type in link_type.source_card_types:
            b.fact("linkSourceCardType", link_type.name, card_type)
        for card_type in link_type.destination_card_types:
            b.fact("linkDestinationCardType", link_type.name, card_type)
        return b.build()

    def _compile_calculation(self, calculation: Calculation) -> str:
        return ProgramBuilder().comment(f"calculation {calculation.name}").raw(calculation.program).build()

    def _compile_card(self, card: Card) -> str:
        self._validate_card(card)

        b = ProgramBuilder().comment(f"card {card.key}")
        b.fact("card", card.key)
        b.field(card.key, "cardType", card.card_type)
        b.field(card.key, "workflowState", card.workflow_state)
        b.field(card.key, "title", card.title)
        b.field(card.key, "rank", card.rank)
        if card.last_updated:
            b.field(card.key, "lastUpdated", card.last_updated)
        if card.last_transitioned:
            b.field(card.key, "lastTransitioned", card.last_transitioned)
        if card.parent:
            b.fact("parent", card.key, card.parent)
        for label in sorted(set(card.labels)):
            b.fact("label", card.key, label)
        for link in card.links:
            b.fact("link", card.key, link.card_key, link.link_type)
            if link.link_description:
                b.fact("linkDescription", card.key, link.card_key, link.link_type, link.link_description)
        for name in sorted(card.fields):
            value = card.fields[name]
            if value is None:
                continue
            for item in (value if isinstance(value, list) else [value]):
                b.field(card.key, name, item)

        # Keep the compiled tree in step with what the solver sees
        if card.key in self._tree:
            self._tree.remove_edges_from(list(self._tree.in_edges(card.key)))
        self._tree.add_node(card.key)
        if card.parent:
            self._tree.add_edge(card.parent, card.key)
        return b.build()

    def _validate_card(self, card: Card):
        if not card.card_type:
            raise _UnitError(f"Card '{card.key}' has no card type")
        if not card.workflow_state:
            raise _UnitError(f"Card '{card.key}' has no workflow state")
        card_type = self.store.get_card_type(card.card_type)
        if card_type is None:
            raise _UnitError(f"Card '{card.key}' references unknown card type '{card.card_type}'")
        workflow = self.store.get_workflow(card_type.workflow)
        if workflow is None:
            raise _UnitError(f"Card '{card.key}' references unknown workflow '{card_type.workflow}'")
        if workflow.state(card.workflow_state) is None:
            raise _UnitError(
                f"Card '{card.key}' is in state '{card.workflow_state}' "
                f"that workflow '{workflow.name}' does not contain"
            )
        for name in card.fields:
            if self.store.get_field_type(name) is None:
                raise _UnitError(f"Card '{card.key}' references unknown field type '{name}'")
        for link in card.links:
            if self.store.get_link_type(link.link_type) is None:
                raise _UnitError(f"Card '{card.key}' references unknown link type '{link.link_type}'")
            if self.store.get_card(link.card_key) is None:
                raise _UnitError(f"Card '{card.key}' links to unknown card '{link.card_key}'")
        if card.parent:
            seen = {card.key}
            current = card.parent
            while current:
                if current in seen:
                    raise _UnitError(f"Card '{card.key}' is its own ancestor")
                seen.add(current)
                ancestor = self.store.get_card(current)
                if ancestor is None:
                    raise _UnitError(f"Card '{card.key}' references unknown parent '{current}'")
                current = ancestor.parent

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def card_logic_program(self, card_key: str) -> Optional[str]:
        """The program text currently compiled for a card."""
        return self._compiled.get((CARD, card_key))

    def resource_logic_program(self, kind: str, name: str) -> Optional[str]:
        return self._compiled.get((kind, name))

    def compiled_keys(self) -> List[str]:
        return sorted(self.program_key(kind, name) for kind, name in self._compiled)
