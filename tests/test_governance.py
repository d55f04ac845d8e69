"""
Action Guard Tests
Denial filtering per action, query contract and unsupported actions.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from core.protocols import CardResult, QueryName, QueryResponse
from orchestration.governance import Action, ActionGuard, PermissionDeniedError
from orchestration.query_engine import QueryContractError, QueryEngine


def stub_engine(*results: CardResult) -> MagicMock:
    """Engine double whose card query returns the given results."""
    engine = MagicMock(spec=QueryEngine)
    engine.error_logger = None
    engine.generate = AsyncMock()

    async def run_card_query(card_key):
        if not results:
            raise QueryContractError("Card query didn't return results")
        if len(results) > 1:
            raise QueryContractError("Card query returned multiple cards")
        return QueryResponse(query=QueryName.CARD, results=list(results))

    engine.run_card_query = AsyncMock(side_effect=run_card_query)
    return engine


def card(**denied) -> CardResult:
    return CardResult.model_validate({
        "key": "proj_1",
        "workflowState": "draft",
        "deniedOperations": denied,
    })


class TestFiltering:

    @pytest.mark.asyncio
    async def test_transition_filtered_by_name(self):
        guard = ActionGuard(stub_engine(card(transition=[
            {"transitionName": "finish", "errorMessage": "needs owner"},
        ])))
        await guard.check_permission("transition", "proj_1", "start")
        with pytest.raises(PermissionDeniedError, match="needs owner"):
            await guard.check_permission("transition", "proj_1", "finish")

    @pytest.mark.asyncio
    async def test_edit_field_filtered_by_field(self):
        guard = ActionGuard(stub_engine(card(editField=[
            {"fieldName": "locked", "errorMessage": "locked field"},
        ])))
        await guard.check_permission(Action.EDIT_FIELD, "proj_1", "title")
        with pytest.raises(PermissionDeniedError):
            await guard.check_permission(Action.EDIT_FIELD, "proj_1", "locked")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action,bucket", [
        ("move", "move"), ("delete", "delete"), ("editContent", "editContent"),
    ])
    async def test_unfiltered_actions(self, action, bucket):
        guard = ActionGuard(stub_engine(card(**{bucket: [
            {"errorMessage": "first"}, {"errorMessage": "second"},
        ]})))
        with pytest.raises(PermissionDeniedError) as exc:
            await guard.check_permission(action, "proj_1")
        assert str(exc.value) == "first; second"
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_other_buckets_do_not_leak(self):
        guard = ActionGuard(stub_engine(card(delete=[{"errorMessage": "no"}])))
        await guard.check_permission("move", "proj_1")

    @pytest.mark.asyncio
    async def test_generate_runs_before_query(self):
        engine = stub_engine(card())
        await ActionGuard(engine).check_permission("move", "proj_1")
        engine.generate.assert_awaited_once()
        engine.run_card_query.assert_awaited_once_with("proj_1")


class TestContract:

    @pytest.mark.asyncio
    async def test_zero_results(self):
        with pytest.raises(QueryContractError, match="didn't return results"):
            await ActionGuard(stub_engine()).check_permission("move", "proj_1")

    @pytest.mark.asyncio
    async def test_multiple_results(self):
        with pytest.raises(QueryContractError, match="multiple cards"):
            await ActionGuard(stub_engine(card(), card())).check_permission("move", "proj_1")

    @pytest.mark.asyncio
    async def test_unsupported_action(self):
        engine = stub_engine(card())
        with pytest.raises(ValueError, match="Action: fly does not support checking permissions"):
            await ActionGuard(engine).check_permission("fly", "proj_1")
        engine.generate.assert_not_awaited()


class TestWithSolver:

    @pytest.mark.asyncio
    async def test_calculated_denials(self, session):
        with pytest.raises(PermissionDeniedError, match="Card has children"):
            await session.check_permission("delete", "proj_1")
        with pytest.raises(PermissionDeniedError, match="Field 'locked' is not editable"):
            await session.check_permission("editField", "proj_1", "locked")
        await session.check_permission("delete", "proj_2")
        await session.check_permission("editField", "proj_1", "priority")

    @pytest.mark.asyncio
    async def test_missing_card(self, session):
        with pytest.raises(QueryContractError):
            await session.check_permission("move", "proj_99")
