"""
Field Updater Tests
Calculated field values written back to cards: conversion, grouping, rejections.
"""
import pytest

from core.ontology import DataType
from core.protocols import FieldUpdate
from infrastructure.error_logger import ErrorLogger
from orchestration.field_updater import FieldUpdateError, FieldUpdater, convert_value


def update(card, field, value) -> FieldUpdate:
    return FieldUpdate(card=card, field=field, new_value=value)


class TestConvertValue:

    @pytest.mark.parametrize("data_type,value,expected", [
        (DataType.LIST, '["a", "b"]', ["a", "b"]),
        (DataType.LIST, ["a"], ["a"]),
        (DataType.BOOLEAN, True, True),
        (DataType.BOOLEAN, "true", True),
        (DataType.BOOLEAN, "yes", False),
        (DataType.INTEGER, "7.9", 7),
        (DataType.NUMBER, "2.5", 2.5),
        (DataType.SHORT_TEXT, 12, "12"),
        (DataType.ENUM, "low", "low"),
    ])
    def test_conversion(self, data_type, value, expected):
        assert convert_value(data_type, value) == expected

    def test_list_must_be_a_list(self):
        with pytest.raises(FieldUpdateError):
            convert_value(DataType.LIST, '"a"')


class TestApply:

    def test_grouped_per_card(self, store):
        changed = FieldUpdater(store).apply([
            update("proj_1", "locked", True),
            update("proj_3", "title", "Renamed"),
            update("proj_1", "owner", "bob"),
        ])

        assert changed == ["proj_1", "proj_3"]
        assert store.get_card("proj_1").fields == {"priority": "high", "owner": "bob", "locked": True}
        assert store.get_card("proj_3").title == "Renamed"

    def test_workflow_state_is_set_directly(self, store):
        FieldUpdater(store).apply([update("proj_3", "workflowState", "closed")])
        card = store.get_card("proj_3")
        assert card.workflow_state == "closed"
        assert card.last_transitioned is not None

    def test_rejected_updates_are_skipped(self, store, tmp_path):
        error_logger = ErrorLogger(str(tmp_path), "proj")
        changed = FieldUpdater(store, error_logger=error_logger).apply([
            update("proj_1", "rank", "9|z"),
            update("proj_1", "cardType", "ticket"),
            update("proj_1", "colour", "red"),
            update("proj_2", "tags", "not json"),
            update("proj_9", "title", "Ghost"),
        ])

        assert changed == []
        assert store.get_card("proj_1").rank == "0|a"
        assert store.get_card("proj_1").card_type == "feature"
        assert store.get_card("proj_2").fields["tags"] == ["x", "y"]
        assert len(error_logger.get_session_errors()) == 5

    def test_valid_updates_survive_a_rejected_one(self, store):
        changed = FieldUpdater(store).apply([
            update("proj_2", "tags", "not json"),
            update("proj_2", "owner", "carol"),
        ])
        assert changed == ["proj_2"]
        card = store.get_card("proj_2")
        assert card.fields == {"tags": ["x", "y"], "owner": "carol"}
