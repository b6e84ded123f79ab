"""
Tests for intakeflow.config -- Workflow Settings.

Covers: default matrix and templates, rule validation (invalid edges,
placeholder roles, duplicates), template lookup, YAML loading with
defaults filled in, and loader error handling.
"""

from pathlib import Path

import pytest
import yaml

from intakeflow.config import (
    DEFAULT_SETTINGS,
    NotificationTemplate,
    TransitionRule,
    WorkflowSettings,
    load_settings_from_yaml,
    resolve_settings,
)
from intakeflow.models import NotificationKind, Role, Stage


# ---------------------------------------------------------------------------
# 1. Default settings
# ---------------------------------------------------------------------------

class TestDefaultSettings:
    def test_six_edges_configured(self):
        assert len(DEFAULT_SETTINGS.transition_rules) == 6

    def test_default_matrix(self):
        assert DEFAULT_SETTINGS.rule_for(Stage.SCHEDULED, Stage.DRAWN).allowed_roles == [Role.NURSE]
        assert DEFAULT_SETTINGS.rule_for(Stage.IN_LAB, Stage.COMPLETE).allowed_roles == [Role.DOCTOR]
        assert set(DEFAULT_SETTINGS.rule_for(Stage.AWAITING, Stage.SCHEDULED).allowed_roles) == {
            Role.DOCTOR,
            Role.NURSE,
        }

    def test_every_stage_has_a_template(self):
        for stage in Stage:
            assert DEFAULT_SETTINGS.template_for(stage) is not None

    def test_results_link_on_lab_and_complete(self):
        assert DEFAULT_SETTINGS.template_for(Stage.IN_LAB).include_results_link is True
        assert DEFAULT_SETTINGS.template_for(Stage.COMPLETE).include_results_link is True
        assert DEFAULT_SETTINGS.template_for(Stage.DRAWN).include_results_link is False

    def test_safe_defaults(self):
        assert DEFAULT_SETTINGS.admin_can_override_sequence is True
        assert DEFAULT_SETTINGS.allow_impersonation is False
        assert DEFAULT_SETTINGS.system_sender == "system"

    def test_resolve_settings(self):
        custom = WorkflowSettings()
        assert resolve_settings(None) is DEFAULT_SETTINGS
        assert resolve_settings(custom) is custom


# ---------------------------------------------------------------------------
# 2. Rule and template validation
# ---------------------------------------------------------------------------

class TestRuleValidation:
    def test_valid_rule(self):
        rule = TransitionRule(
            from_stage=Stage.DRAWN,
            to_stage=Stage.IN_TRANSIT,
            allowed_roles=[Role.NURSE],
        )
        assert rule.allowed_roles == [Role.NURSE]

    def test_skipping_edge_rejected(self):
        with pytest.raises(Exception):
            TransitionRule(
                from_stage=Stage.AWAITING,
                to_stage=Stage.DRAWN,
                allowed_roles=[Role.DOCTOR],
            )

    def test_empty_roles_rejected(self):
        with pytest.raises(Exception):
            TransitionRule(
                from_stage=Stage.AWAITING,
                to_stage=Stage.SCHEDULED,
                allowed_roles=[],
            )

    def test_none_role_rejected(self):
        with pytest.raises(Exception):
            TransitionRule(
                from_stage=Stage.AWAITING,
                to_stage=Stage.SCHEDULED,
                allowed_roles=[Role.NONE],
            )

    def test_duplicate_edges_rejected(self):
        rule = TransitionRule(
            from_stage=Stage.DRAWN,
            to_stage=Stage.IN_TRANSIT,
            allowed_roles=[Role.LAB_TECH],
        )
        with pytest.raises(Exception):
            WorkflowSettings(transition_rules=[rule, rule])

    def test_duplicate_templates_rejected(self):
        template = NotificationTemplate(stage=Stage.DRAWN, message="drawn")
        with pytest.raises(Exception):
            WorkflowSettings(notification_templates=[template, template])

    def test_template_defaults(self):
        template = NotificationTemplate(stage=Stage.DRAWN, message="drawn")
        assert template.subject == "Patient status update - {stage}"
        assert template.kind == NotificationKind.INFO
        assert template.include_results_link is False

    def test_missing_rule_and_template_return_none(self):
        settings = WorkflowSettings()
        assert settings.rule_for(Stage.AWAITING, Stage.SCHEDULED) is None
        assert settings.template_for(Stage.AWAITING) is None


# ---------------------------------------------------------------------------
# 3. YAML loader
# ---------------------------------------------------------------------------

class TestYAMLLoader:
    def _write_yaml(self, data: dict, tmp_dir: Path) -> Path:
        path = tmp_dir / "workflow.yaml"
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, allow_unicode=True)
        return path

    def test_override_single_edge(self, tmp_path):
        path = self._write_yaml({
            "workflow": {
                "transition_rules": [
                    {"from_stage": "drawn", "to_stage": "in-transit", "allowed_roles": ["nurse"]},
                ],
            },
        }, tmp_path)
        settings = load_settings_from_yaml(path)
        assert len(settings.transition_rules) == 1
        assert settings.rule_for(Stage.DRAWN, Stage.IN_TRANSIT).allowed_roles == [Role.NURSE]

    def test_omitted_sections_use_defaults(self, tmp_path):
        path = self._write_yaml({"workflow": {"admin_can_override_sequence": False}}, tmp_path)
        settings = load_settings_from_yaml(path)
        assert settings.admin_can_override_sequence is False
        assert len(settings.transition_rules) == len(DEFAULT_SETTINGS.transition_rules)
        assert settings.template_for(Stage.COMPLETE) is not None

    def test_load_nonexistent_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_settings_from_yaml("/nonexistent/workflow.yaml")

    def test_missing_workflow_key_raises(self, tmp_path):
        path = self._write_yaml({"settings": {}}, tmp_path)
        with pytest.raises(ValueError, match="top-level 'workflow'"):
            load_settings_from_yaml(path)

    def test_workflow_not_a_mapping_raises(self, tmp_path):
        path = self._write_yaml({"workflow": ["nope"]}, tmp_path)
        with pytest.raises(ValueError, match="must be a mapping"):
            load_settings_from_yaml(path)

    def test_invalid_edge_in_yaml_rejected(self, tmp_path):
        path = self._write_yaml({
            "workflow": {
                "transition_rules": [
                    {"from_stage": "awaiting", "to_stage": "complete", "allowed_roles": ["doctor"]},
                ],
            },
        }, tmp_path)
        with pytest.raises(Exception):
            load_settings_from_yaml(path)

    def test_load_sample_settings(self):
        """The bundled example file loads successfully."""
        sample_path = Path(__file__).parent.parent / "examples" / "workflow_settings.yaml"
        if sample_path.exists():
            settings = load_settings_from_yaml(sample_path)
            assert len(settings.transition_rules) == 6
            assert settings.rule_for(Stage.COMPLETE, Stage.AWAITING).allowed_roles == [Role.DOCTOR]
