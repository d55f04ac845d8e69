"""
Card Logic Integration Tests
End-to-end scenarios through a ProjectSession: commands, guard, solver, queries.
"""
from pathlib import Path

import pytest
import yaml

from infrastructure.card_store import CardStore
from infrastructure.config import EngineConfig
from orchestration.engine import ProjectSession
from orchestration.governance import PermissionDeniedError

PROJECT_YAML = Path(__file__).parent / "fixtures" / "project.yaml"


async def card_view(session, key):
    await session.generate()
    return (await session.run_query("card", {"cardKey": key})).results[0]


class TestCardLifecycle:
    """A card moving through its workflow and the calculated view following it."""

    @pytest.mark.asyncio
    async def test_transition_is_visible_to_queries(self, session):
        await session.generate()
        assert (await card_view(session, "proj_1")).workflow_state == "draft"

        await session.card_transition("proj_1", "start")

        epic = await card_view(session, "proj_1")
        assert epic.workflow_state == "inProgress"
        assert epic.workflow_state_category.value == "active"
        assert {d.transition_name for d in epic.denied_operations.transition} == {"start"}

    @pytest.mark.asyncio
    async def test_denied_field_edit_leaves_card_untouched(self, session):
        with pytest.raises(PermissionDeniedError, match="not editable"):
            await session.update_card_fields("proj_1", {"priority": "low", "locked": True})
        assert session.store.get_card("proj_1").fields["priority"] == "high"

        await session.update_card_fields("proj_1", {"priority": "low"})
        priority = (await card_view(session, "proj_1")).field("priority")
        assert priority.display_value == "Low"

    @pytest.mark.asyncio
    async def test_content_edit(self, session):
        await session.update_card_content("proj_3", title="Renamed", labels=["ops"])
        ticket = await card_view(session, "proj_3")
        assert ticket.title == "Renamed"
        assert ticket.labels == {"ops"}


class TestTreeCommands:
    """Create, move and delete through the guard."""

    @pytest.mark.asyncio
    async def test_new_child_inherits_owner(self, session):
        card = await session.create_card("feature", parent="proj_1", title="Task")
        assert card.key == "proj_4"

        task = await card_view(session, "proj_4")
        assert task.field("owner").value == "alice"
        assert task.field("owner").inherited is True

        tree = (await session.run_query("tree")).results
        assert {c.key for c in tree[0].children} == {"proj_2", "proj_4"}

    @pytest.mark.asyncio
    async def test_delete_requires_no_children(self, session):
        with pytest.raises(PermissionDeniedError, match="Card has children"):
            await session.remove_card("proj_1")

        await session.move_card("proj_2", None)
        assert await session.remove_card("proj_1") == ["proj_1"]

        tree = (await session.run_query("tree")).results
        assert [c.key for c in tree] == ["proj_2", "proj_3"]
        ticket = await card_view(session, "proj_3")
        assert ticket.links == []

    @pytest.mark.asyncio
    async def test_removing_link_target_keeps_generation_working(self, session):
        await session.generate()
        assert await session.remove_card("proj_3") == ["proj_3"]

        await session.update_card_content("proj_1", title="Epic, unlinked")
        await session.generate()

        epic = await card_view(session, "proj_1")
        assert epic.title == "Epic, unlinked"
        assert epic.links == []
        assert session.store.get_card("proj_1").links == []


class TestCalculatedUpdates:
    """Field values written back by calculations after create and transition."""

    @pytest.mark.asyncio
    async def test_creation_updates(self, session):
        card = await session.create_card("feature", parent="proj_1", title="Task")

        assert card.fields["tags"] == ["new"]
        assert card.rank == "0|000004"
        task = await card_view(session, card.key)
        assert task.field("tags").value == ["new"]

    @pytest.mark.asyncio
    async def test_creation_keeps_given_values(self, session):
        card = await session.create_card("feature", title="Tagged", fields={"tags": ["mine"]})
        assert card.fields["tags"] == ["mine"]

    @pytest.mark.asyncio
    async def test_transition_updates(self, session):
        card = await session.card_transition("proj_1", "start")

        assert card.workflow_state == "inProgress"
        assert card.fields["locked"] is True
        assert card.title == "Started: Epic"
        epic = await card_view(session, "proj_1")
        assert epic.title == "Started: Epic"
        assert epic.field("locked").value is True

    @pytest.mark.asyncio
    async def test_other_transitions_update_nothing(self, session):
        card = await session.card_transition("proj_3", "close")
        assert card.title == "Ticket"
        assert "locked" not in card.fields


class TestProjectIsolation:
    """Sessions sharing one gateway are kept apart by project prefix."""

    @pytest.mark.asyncio
    async def test_shared_gateway(self, session, gateway):
        with open(PROJECT_YAML) as f:
            project = yaml.safe_load(f)
        project["prefix"] = "team"
        other = ProjectSession(CardStore.from_dict(project), config=EngineConfig(), gateway=gateway)

        await session.update_card_content("proj_1", title="Changed here")
        await other.generate()

        assert (await card_view(session, "proj_1")).title == "Changed here"
        assert (await card_view(other, "proj_1")).title == "Epic"

        session.close()
        assert gateway.store.keys("proj") == []
        assert gateway.store.keys("team")
        assert (await card_view(other, "proj_1")).title == "Epic"
