"""
Card Store Tests
Card tree mutations, key allocation and JSON persistence.
"""
import json
from pathlib import Path

import pytest

from core.ontology import Card
from core.state_machine import CardNotFoundError
from infrastructure.card_store import CardStore, CardStoreError

PROJECT_YAML = Path(__file__).parent / "fixtures" / "project.yaml"


class TestProjectLoading:

    def test_from_yaml(self, store):
        assert store.prefix == "proj"
        assert [c.key for c in store.list_cards()] == ["proj_1", "proj_2", "proj_3"]
        assert store.get_workflow("simple").initial_state.name == "draft"
        assert store.get_card_type("feature").visibility("owner").value == "optional"
        assert [c.key for c in store.children("proj_1")] == ["proj_2"]

    def test_missing_prefix(self, tmp_path):
        path = tmp_path / "project.yaml"
        path.write_text("cards: []\n")
        with pytest.raises(CardStoreError, match="no 'prefix'"):
            CardStore.from_yaml(path)

    def test_unknown_parent(self):
        with pytest.raises(CardStoreError, match="unknown parent"):
            CardStore.from_dict({
                "prefix": "p",
                "cards": [{"key": "p_1", "cardType": "t", "workflowState": "s", "parent": "p_7"}],
            })


class TestCardKeys:

    def test_create_card_uses_next_ordinal(self, store):
        card = store.create_card("feature", title="New")
        assert card.key == "proj_4"
        assert card.workflow_state == "draft"
        assert card.rank == "0|000004"
        assert card.last_updated is not None

    def test_ordinals_are_per_store(self, store):
        other = CardStore.from_yaml(PROJECT_YAML)
        assert store.create_card("ticket").key == "proj_4"
        assert other.create_card("ticket").key == "proj_4"
        assert store.create_card("ticket").key == "proj_5"

    def test_unknown_card_type(self, store):
        with pytest.raises(CardStoreError):
            store.create_card("planet")


class TestMutations:

    def test_duplicate_key(self, store):
        with pytest.raises(CardStoreError, match="already exists"):
            store.add_card(Card(key="proj_1", card_type="feature", workflow_state="draft"))

    def test_update_card_rejects_protected_attributes(self, store):
        with pytest.raises(CardStoreError):
            store.update_card("proj_1", workflow_state="done")
        with pytest.raises(CardStoreError):
            store.update_card("proj_1", parent=None)
        with pytest.raises(CardStoreError, match="workflow_state"):
            store.update_card("proj_1", workflowState="done")
        assert store.get_card("proj_1").workflow_state == "draft"

    def test_update_card_validates_values(self, store):
        card = store.update_card("proj_3", links=[{"linkType": "relates", "cardKey": "proj_1"}])
        assert card.links[0].card_key == "proj_1"
        assert card.links[0].link_description is None

        with pytest.raises(CardStoreError, match="Invalid update"):
            store.update_card("proj_3", links=[{"cardKey": "proj_1"}])
        with pytest.raises(CardStoreError, match="Unknown card attribute"):
            store.update_card("proj_3", colour="red")
        assert store.get_card("proj_3").links[0].link_type == "relates"

    def test_update_fields_merges_and_clears(self, store):
        card = store.update_card_fields("proj_1", {"owner": None, "locked": True})
        assert card.fields == {"priority": "high", "locked": True}

    def test_move_into_own_subtree_is_a_cycle(self, store):
        with pytest.raises(CardStoreError, match="Cycle detected"):
            store.move_card("proj_1", "proj_2")
        with pytest.raises(CardStoreError, match="Cycle detected"):
            store.move_card("proj_1", "proj_1")

    def test_move_to_root_and_back(self, store):
        store.move_card("proj_2", None)
        assert store.children("proj_1") == []
        moved = store.move_card("proj_2", "proj_3")
        assert moved.parent == "proj_3"
        assert [c.key for c in store.children("proj_3")] == ["proj_2"]

    def test_remove_cascades(self, store):
        assert store.remove_card("proj_1") == ["proj_1", "proj_2"]
        assert store.get_card("proj_2") is None
        with pytest.raises(CardNotFoundError):
            store.remove_card("proj_1")

    def test_remove_drops_inbound_links(self, store):
        assert store.linking_cards(store.subtree("proj_3")) == ["proj_1"]
        store.remove_card("proj_3")
        epic = store.get_card("proj_1")
        assert epic.links == []
        assert epic.fields["owner"] == "alice"


class TestPersistence:

    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "cards.json")
        store = CardStore.from_yaml(PROJECT_YAML, persistence_path=path)
        store.create_card("ticket", title="Persisted")
        store.persist_card_state("proj_3", "closed")

        reloaded = CardStore("proj", persistence_path=path)
        assert [c.key for c in reloaded.list_cards()] == ["proj_1", "proj_2", "proj_3", "proj_4"]
        assert reloaded.get_card("proj_3").workflow_state == "closed"
        assert reloaded.get_card("proj_2").parent == "proj_1"
        assert reloaded.get_link_type("relates").enable_link_description is True
        assert reloaded.create_card("ticket").key == "proj_5"

    def test_corrupted_file_is_rejected(self, tmp_path):
        path = tmp_path / "cards.json"
        CardStore.from_yaml(PROJECT_YAML, persistence_path=str(path))
        data = json.loads(path.read_text())
        data["project"]["prefix"] = "tampered"
        path.write_text(json.dumps(data))

        with pytest.raises(CardStoreError, match="Checksum mismatch"):
            CardStore("proj", persistence_path=str(path))

    def test_missing_file_starts_fresh(self, tmp_path):
        store = CardStore("proj", persistence_path=str(tmp_path / "none.json"))
        assert store.list_cards() == []
