"""
Result Projector Tests
Atom splitting, grouping, tree nesting/ordering and shape enforcement.
"""
import pytest

from core.protocols import CardResult, ChangesResult, QueryName, TreeResult
from infrastructure.result_projector import (
    ResultProjectionError, ResultProjector, split_atoms,
)


@pytest.fixture
def projector():
    return ResultProjector()


def card_line(*extra: str) -> str:
    return " ".join(('result("k")', 'field("k","workflowState","draft")') + extra)


class TestSplitAtoms:

    def test_spaces_inside_strings_and_terms(self):
        line = 'field("k","title","a b (c)") label("k","x\\" y") fieldDetail("k",("t", "f"),"index",1)'
        assert split_atoms(line) == [
            'field("k","title","a b (c)")',
            'label("k","x\\" y")',
            'fieldDetail("k",("t", "f"),"index",1)',
        ]

    def test_empty_line(self):
        assert split_atoms("") == []


class TestCardProjection:

    def test_envelope(self, projector):
        response = projector.project(QueryName.CARD, card_line(
            'field("k","title","A title")',
            'label("k","b")',
            'label("k","a")',
            'link("k","o","relates","relates to","outbound")',
            'link("k","p","relates","is related to","inbound","why")',
            'notification("k","info","T","M")',
            'policyCheckSuccess("k","s","c1")',
            'policyCheckFailure("k","s","c2","bad")',
        ))
        assert response.error is None
        (result,) = response.results
        assert isinstance(result, CardResult)
        assert result.title == "A title"
        assert result.workflow_state == "draft"
        assert result.labels == {"a", "b"}
        assert [l.key for l in result.links] == ["o", "p"]
        assert result.links[1].link_description == "why"
        assert result.notifications[0].message == "M"
        assert result.policy_checks.failures[0].error_message == "bad"

    def test_denials_are_bucketed(self, projector):
        response = projector.project(QueryName.CARD, card_line(
            'transitionDenied("k","finish","no")',
            'movingCardDenied("k","stay")',
            'deletingCardDenied("k","keep")',
            'editingFieldDenied("k","f","locked")',
            'editingContentDenied("k","frozen")',
        ))
        denied = response.results[0].denied_operations
        assert denied.transition[0].transition_name == "finish"
        assert denied.move[0].error_message == "stay"
        assert denied.delete[0].error_message == "keep"
        assert denied.edit_field[0].field_name == "f"
        assert denied.edit_content[0].error_message == "frozen"

    def test_field_details(self, projector):
        response = projector.project(QueryName.CARD, card_line(
            'fieldDetail("k","prio","dataType","enum")',
            'fieldDetail("k","prio","index",1)',
            'fieldDetail("k","prio","isEditable",false)',
            'fieldDetail("k","prio","visibility","always")',
            'fieldDetail("k","tags","dataType","list")',
            'fieldDetail("k","tags","index",0)',
            'fieldValue("k","prio","high")',
            'fieldValue("k","tags","x")',
            'fieldValue("k","tags","y")',
            'enumOption("k","prio","low",0,"Low")',
            'enumOption("k","prio","high",1,"High")',
        ))
        result = response.results[0]
        assert [f.name for f in result.fields] == ["tags", "prio"]
        prio = result.field("prio")
        assert prio.value == "high"
        assert prio.display_value == "High"
        assert prio.is_editable is False
        assert prio.display_name == "prio"
        assert [o.value for o in prio.enum_options] == ["low", "high"]
        assert result.field("tags").value == ["x", "y"]

    def test_query_error(self, projector):
        response = projector.project(QueryName.CARD, 'queryError("Missing parameter")')
        assert response.results == []
        assert response.error == "Missing parameter"

    def test_unknown_atom_is_rejected(self, projector):
        with pytest.raises(ResultProjectionError, match="unexpected/1|Unexpected atom"):
            projector.project(QueryName.CARD, card_line("unexpected(1)"))

    def test_tree_atom_is_not_a_card_atom(self, projector):
        with pytest.raises(ResultProjectionError):
            projector.project(QueryName.CARD, card_line('childResult("k","c")'))

    def test_empty_denial_message_is_rejected(self, projector):
        with pytest.raises(ResultProjectionError):
            projector.project(QueryName.CARD, card_line('movingCardDenied("k","")'))

    def test_missing_required_field_is_rejected(self, projector):
        with pytest.raises(ResultProjectionError):
            projector.project(QueryName.CARD, 'result("k")')


class TestTreeProjection:

    def test_nesting_and_default_rank_order(self, projector):
        response = projector.project(QueryName.TREE, " ".join([
            'result("b")', 'result("a")',
            'field("a","rank","0|b")', 'field("b","rank","0|a")',
            'childResult("a","c")', 'childResult("a","d")',
            'field("c","rank","0|z")', 'field("d","rank","0|y")',
        ]))
        roots = response.results
        assert all(isinstance(r, TreeResult) for r in roots)
        assert [r.key for r in roots] == ["b", "a"]
        assert [c.key for c in roots[1].children] == ["d", "c"]

    def test_order_atoms(self, projector):
        response = projector.project(QueryName.TREE, " ".join([
            'result("x")', 'result("y")',
            'field("x","title","Alpha")', 'field("y","title","Beta")',
            'order(0,1,"title","DESC")',
        ]))
        assert [r.key for r in response.results] == ["y", "x"]

    def test_no_results(self, projector):
        assert projector.project(QueryName.TREE, "").results == []


class TestChangesProjection:

    def test_update_fields(self, projector):
        response = projector.project(QueryName.ON_TRANSITION, " ".join([
            'updateField("k","locked",true)',
            'updateField("k","estimate",3)',
            'updateField("m","title","New")',
        ]))
        (changes,) = response.results
        assert isinstance(changes, ChangesResult)
        assert changes.key == "onTransition"
        assert [(u.card, u.field, u.new_value) for u in changes.update_fields] == [
            ("k", "locked", True), ("k", "estimate", 3), ("m", "title", "New"),
        ]

    def test_no_updates_is_one_empty_result(self, projector):
        (changes,) = projector.project(QueryName.ON_CREATION, "").results
        assert changes.update_fields == []

    def test_card_atoms_are_rejected(self, projector):
        with pytest.raises(ResultProjectionError):
            projector.project(QueryName.ON_CREATION, 'result("k")')
