"""
RESULT PROJECTOR
Turns one answer line of shown atoms into typed query results.

Each atom is parsed with the solver's own term parser, grouped by the card
key in its first argument, and dispatched by name/arity. The set of atoms a
query may produce is closed: anything else means the query template and this
projector disagree, and raises ResultProjectionError.

List-valued parts of a result (links, notifications, policy checks, field
updates) keep the order of the answer line, which the gateway sorts.
"""
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from clingo.symbol import Symbol, SymbolType, parse_term
from pydantic import ValidationError

from core.ontology import DataType, InternalConsistencyError
from core.protocols import QUERY_SHAPES, QueryName, QueryResponse

logger = logging.getLogger("ResultProjector")


class ResultProjectionError(InternalConsistencyError):
    """Solver output does not fit the shape of the query."""
    pass


# Scalar field/3 atoms that land directly on the result
SCALAR_FIELDS = {
    "title": "title",
    "rank": "rank",
    "cardType": "cardType",
    "workflowState": "workflowState",
    "workflowStateCategory": "workflowStateCategory",
    "lastUpdated": "lastUpdated",
}

ORDER_FIELDS = {"rank", "title", "cardType", "key"}


# =============================================================================
# ATOM PARSING
# =============================================================================

def split_atoms(line: str) -> List[str]:
    """Split an answer line on top-level spaces (not inside strings or parentheses)."""
    atoms: List[str] = []
    depth = 0
    in_string = False
    escaped = False
    start = 0
    for i, ch in enumerate(line):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == " " and depth == 0:
            if i > start:
                atoms.append(line[start:i])
            start = i + 1
    if start < len(line):
        atoms.append(line[start:])
    return atoms


def to_python(symbol: Symbol) -> Any:
    """Decode a term: strings, numbers, true/false, anything else as its text."""
    if symbol.type == SymbolType.String:
        return symbol.string
    if symbol.type == SymbolType.Number:
        return symbol.number
    if symbol.type == SymbolType.Function and not symbol.arguments and symbol.name in ("true", "false"):
        return symbol.name == "true"
    return str(symbol)


def _new_raw(key: str) -> Dict[str, Any]:
    return {
        "key": key,
        "labels": set(),
        "links": [],
        "notifications": [],
        "policyChecks": {"successes": [], "failures": []},
        "deniedOperations": {
            "transition": [], "move": [], "delete": [], "editField": [], "editContent": []
        },
    }


# =============================================================================
# PROJECTION STATE
# =============================================================================

class _Projection:
    """Accumulates atoms of one answer before they are shaped into results."""

    def __init__(self):
        self.cards: Dict[str, Dict[str, Any]] = {}
        self.results: List[str] = []
        self.children: Dict[str, List[str]] = defaultdict(list)
        self.orders: Dict[int, List[Tuple[int, str, str]]] = defaultdict(list)
        self.details: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.values: Dict[Tuple[str, str], List[Any]] = defaultdict(list)
        self.options: Dict[Tuple[str, str], List[Dict[str, Any]]] = defaultdict(list)
        self.updates: List[Dict[str, Any]] = []
        self.error: Optional[str] = None

    def card(self, key: str) -> Dict[str, Any]:
        if key not in self.cards:
            self.cards[key] = _new_raw(key)
        return self.cards[key]

    def detail(self, key: str, field_name: str) -> Dict[str, Any]:
        self.card(key)
        return self.details[key].setdefault(field_name, {"name": field_name})


def _result(p: _Projection, card):
    if card not in p.results:
        p.results.append(card)
    p.card(card)


def _child_result(p: _Projection, parent, child):
    p.card(parent)
    p.card(child)
    if child not in p.children[parent]:
        p.children[parent].append(child)


def _field(p: _Projection, card, name, value):
    p.card(card)[SCALAR_FIELDS.get(name, name)] = value


def _label(p: _Projection, card, label):
    p.card(card)["labels"].add(label)


def _link(p: _Projection, card, other, link_type, display_name, direction, description=None):
    p.card(card)["links"].append({
        "key": other,
        "linkType": link_type,
        "displayName": display_name,
        "direction": direction,
        "linkDescription": description,
    })


def _transition_denied(p: _Projection, card, transition, message):
    p.card(card)["deniedOperations"]["transition"].append(
        {"transitionName": transition, "errorMessage": message}
    )


def _denied(bucket: str) -> Callable:
    def handler(p: _Projection, card, message):
        p.card(card)["deniedOperations"][bucket].append({"errorMessage": message})
    return handler


def _editing_field_denied(p: _Projection, card, field_name, message):
    p.card(card)["deniedOperations"]["editField"].append(
        {"fieldName": field_name, "errorMessage": message}
    )


def _policy_success(p: _Projection, card, suite, case):
    p.card(card)["policyChecks"]["successes"].append({"testSuite": suite, "testCase": case})


def _policy_failure(p: _Projection, card, suite, case, message):
    p.card(card)["policyChecks"]["failures"].append(
        {"testSuite": suite, "testCase": case, "errorMessage": message}
    )


def _notification(p: _Projection, card, category, title, message):
    p.card(card)["notifications"].append(
        {"category": category, "title": title, "message": message}
    )


def _query_error(p: _Projection, message):
    p.error = message if p.error is None else f"{p.error}; {message}"


def _order(p: _Projection, level, index, field_name, direction):
    p.orders[level].append((index, field_name, direction))


def _field_detail(p: _Projection, card, field_name, attribute, value):
    p.detail(card, field_name)[attribute] = value


def _field_value(p: _Projection, card, field_name, value):
    p.detail(card, field_name)
    p.values[(card, field_name)].append(value)


def _enum_option(p: _Projection, card, field_name, value, index, display):
    p.detail(card, field_name)
    p.options[(card, field_name)].append(
        {"value": value, "index": index, "displayValue": display}
    )


def _update_field(p: _Projection, card, field_name, value):
    p.updates.append({"card": card, "field": field_name, "newValue": value})


COMMON_HANDLERS: Dict[Tuple[str, int], Callable] = {
    ("queryError", 1): _query_error,
    ("result", 1): _result,
    ("field", 3): _field,
    ("label", 2): _label,
    ("link", 5): _link,
    ("link", 6): _link,
    ("transitionDenied", 3): _transition_denied,
    ("movingCardDenied", 2): _denied("move"),
    ("deletingCardDenied", 2): _denied("delete"),
    ("editingFieldDenied", 3): _editing_field_denied,
    ("editingContentDenied", 2): _denied("editContent"),
    ("policyCheckSuccess", 3): _policy_success,
    ("policyCheckFailure", 4): _policy_failure,
    ("notification", 4): _notification,
}

QUERY_HANDLERS: Dict[QueryName, Dict[Tuple[str, int], Callable]] = {
    QueryName.TREE: {
        **COMMON_HANDLERS,
        ("childResult", 2): _child_result,
        ("order", 4): _order,
    },
    QueryName.CARD: {
        **COMMON_HANDLERS,
        ("fieldDetail", 4): _field_detail,
        ("fieldValue", 3): _field_value,
        ("enumOption", 5): _enum_option,
    },
    QueryName.ON_CREATION: {
        ("queryError", 1): _query_error,
        ("updateField", 3): _update_field,
    },
    QueryName.ON_TRANSITION: {
        ("queryError", 1): _query_error,
        ("updateField", 3): _update_field,
    },
}


# =============================================================================
# PROJECTOR
# =============================================================================

class ResultProjector:
    """Builds typed results for a named query from one answer line."""

    def project(self, query: QueryName, answer: str) -> QueryResponse:
        handlers = QUERY_HANDLERS[query]
        projection = _Projection()

        for text in split_atoms(answer):
            try:
                symbol = parse_term(text)
            except RuntimeError as e:
                raise ResultProjectionError(f"Cannot parse atom '{text}': {e}") from e
            if symbol.type != SymbolType.Function:
                raise ResultProjectionError(f"Unexpected term '{text}' in '{query.value}' result")
            handler = handlers.get((symbol.name, len(symbol.arguments)))
            if handler is None:
                raise ResultProjectionError(
                    f"Unexpected atom '{symbol.name}/{len(symbol.arguments)}' "
                    f"in '{query.value}' result"
                )
            handler(projection, *[to_python(arg) for arg in symbol.arguments])

        if query == QueryName.TREE:
            raws = self._build_tree(projection)
        elif query in (QueryName.ON_CREATION, QueryName.ON_TRANSITION):
            raws = [{"key": query.value, "updateFields": projection.updates}]
        else:
            raws = self._build_cards(projection)

        shape = QUERY_SHAPES[query]
        try:
            results = [shape.model_validate(raw) for raw in raws]
        except ValidationError as e:
            raise ResultProjectionError(f"'{query.value}' result failed validation: {e}") from e
        return QueryResponse(query=query, results=results, error=projection.error)

    # =========================================================================
    # SHAPES
    # =========================================================================

    def _build_tree(self, p: _Projection) -> List[Dict[str, Any]]:
        def sort_level(keys: List[str], level: int) -> List[str]:
            orders = sorted(p.orders.get(level) or [(1, "rank", "ASC")])
            ordered = list(keys)
            # Stable sorts, least significant criterion first
            for _, field_name, direction in reversed(orders):
                if field_name not in ORDER_FIELDS:
                    logger.warning(f"Ignoring order by unknown field '{field_name}'")
                    continue
                ordered.sort(
                    key=lambda k: str(p.cards[k].get(field_name) or ""),
                    reverse=str(direction).upper() == "DESC",
                )
            return ordered

        def build(key: str, level: int, path: Tuple[str, ...]) -> Dict[str, Any]:
            if key in path:
                raise ResultProjectionError(f"Cycle in tree result at '{key}'")
            raw = p.cards[key]
            children = sort_level(p.children.get(key, []), level + 1)
            raw["children"] = [build(child, level + 1, path + (key,)) for child in children]
            return raw

        return [build(root, 0, ()) for root in sort_level(p.results, 0)]

    def _build_cards(self, p: _Projection) -> List[Dict[str, Any]]:
        raws = []
        for key in p.results:
            raw = p.cards[key]
            fields = []
            for name, detail in p.details.get(key, {}).items():
                fields.append(self._field_detail(key, name, detail, p))
            fields.sort(key=lambda d: (d.get("index") is None, d.get("index") or 0, d["name"]))
            raw["fields"] = fields
            raws.append(raw)
        return raws

    @staticmethod
    def _field_detail(key: str, name: str, detail: Dict[str, Any], p: _Projection) -> Dict[str, Any]:
        detail = dict(detail)
        detail.setdefault("displayName", name)
        values = p.values.get((key, name), [])
        if detail.get("dataType") == DataType.LIST.value:
            detail["value"] = list(values)
        elif values:
            if len(values) > 1:
                logger.warning(f"Card '{key}' has {len(values)} values for field '{name}', using the first")
            detail["value"] = values[0]
        options = sorted(p.options.get((key, name), []), key=lambda o: o["index"])
        if options:
            detail["enumOptions"] = options
            for option in options:
                if option["value"] == detail.get("value"):
                    detail["displayValue"] = option["displayValue"]
        return detail
