"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

import pytest

from tmtp.mapping_config import (
    MappingConfiguration,
    StatusDecision,
    TemplateFieldDecision,
    UserDecision,
    WorkflowDecision,
    generate_password,
    normalize_option_list,
)


@pytest.mark.unit
class TestDecisions:
    """Tests for individual create-or-map decisions."""

    def test_unknown_action_falls_back_to_default(self):
        """Test that each entity type falls back to its own default action."""
        assert WorkflowDecision.model_validate({"action": "merge"}).action == "map"
        assert StatusDecision.model_validate({"action": "merge"}).action == "create"
        assert UserDecision.model_validate({}).action == "map"

    def test_non_object_entry_becomes_default_decision(self):
        assert StatusDecision.model_validate("whatever").action == "create"

    def test_camel_case_keys(self):
        decision = StatusDecision.model_validate(
            {
                "action": "map",
                "mappedTo": "4",
                "systemName": "passed",
                "isSuccess": 1,
                "scopeIds": ["1", "x", 3],
            }
        )

        assert decision.is_map
        assert decision.mapped_to == 4
        assert decision.system_name == "passed"
        assert decision.is_success is True
        assert decision.is_enabled is True
        assert decision.scope_ids == [1, 3]

    def test_workflow_type_aliases(self):
        decision = WorkflowDecision.model_validate({"suggestedWorkflowType": "DONE"})
        assert decision.workflow_type == "DONE"

    def test_user_access_is_validated(self):
        assert UserDecision.model_validate({"access": " admin "}).access == "ADMIN"
        assert UserDecision.model_validate({"access": "superuser"}).access is None

    def test_mark_mapped(self):
        decision = StatusDecision.model_validate({"action": "create", "name": "Passed"})

        decision.mark_mapped(12, system_name="passed")

        assert decision.action == "map"
        assert decision.mapped_to == 12
        assert decision.system_name == "passed"

    def test_generate_password(self):
        password = generate_password()
        assert len(password) == 24
        assert password.isalnum()


@pytest.mark.unit
class TestTemplateFieldDecision:
    """Tests for template field decisions."""

    def test_results_target_type(self):
        assert TemplateFieldDecision.model_validate({"targetType": "Results"}).target_type == "result"
        assert TemplateFieldDecision.model_validate({"targetType": "other"}).target_type == "case"

    def test_legacy_name_becomes_system_name(self):
        decision = TemplateFieldDecision.model_validate({"name": "priority", "label": "Priority"})

        assert decision.system_name == "priority"
        assert decision.display_name == "Priority"

    def test_options_from_string(self):
        decision = TemplateFieldDecision.model_validate(
            {"fieldType": "Dropdown", "options": "High, Medium\nLow"}
        )

        assert decision.type_name == "Dropdown"
        assert [option.name for option in decision.dropdown_options] == ["High", "Medium", "Low"]
        assert [option.is_default for option in decision.dropdown_options] == [True, False, False]


@pytest.mark.unit
class TestNormalizeOptionList:
    """Tests for option list normalization."""

    def test_orders_and_keeps_single_default(self):
        """Test that options are sorted by order and only the first default survives."""
        options = normalize_option_list(
            [
                {"label": "Low", "order": 3, "isDefault": True},
                {"name": "High", "order": 1, "default": True},
                {"value": "Medium", "order": 2},
                {"name": "  "},
                42,
            ]
        )

        assert [option["name"] for option in options] == ["High", "Medium", "Low"]
        assert [option["is_default"] for option in options] == [True, False, False]
        assert [option["order"] for option in options] == [0, 1, 2]

    def test_empty_values(self):
        assert normalize_option_list(None) is None
        assert normalize_option_list("") is None
        assert normalize_option_list([" ", {}]) is None


@pytest.mark.unit
class TestMappingConfiguration:
    """Tests for the full mapping configuration."""

    def test_from_dict_drops_non_numeric_ids(self):
        config = MappingConfiguration.from_dict(
            {
                "workflows": {"1": {"action": "map", "mappedTo": 3}, "abc": {"action": "map"}},
                "milestoneTypes": {"2": {"action": "create", "name": "Sprint"}},
            }
        )

        assert list(config.workflows) == [1]
        assert config.count("milestone_types") == 1
        assert config.decisions("milestone_types")[2].name == "Sprint"

    def test_from_dict_tolerates_garbage(self):
        assert MappingConfiguration.from_dict(None).count("statuses") == 0
        assert MappingConfiguration.from_dict({"statuses": []}).count("statuses") == 0

    def test_to_dict_uses_camel_case_and_string_ids(self):
        config = MappingConfiguration.from_dict(
            {"templateFields": {"9": {"action": "create", "displayName": "Area"}}}
        )

        data = config.to_dict()

        entry = data["templateFields"]["9"]
        assert entry["action"] == "create"
        assert entry["displayName"] == "Area"
        assert entry["targetType"] == "case"
        assert "mappedTo" not in entry

    def test_round_trip_keeps_decisions(self):
        original = MappingConfiguration.from_dict(
            {"users": {"5": {"action": "create", "email": "qa@example.com", "isApi": True}}}
        )

        restored = MappingConfiguration.from_dict(original.to_dict())

        user = restored.users[5]
        assert user.action == "create"
        assert user.email == "qa@example.com"
        assert user.is_api is True
