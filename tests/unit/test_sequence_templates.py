"""
Unit tests for the sequence template registry and placeholder rendering.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))

from salesflow.agents.sequence_templates import (
    EMAIL_TEMPLATES, SEQUENCES, SequenceTemplate, StepDef, TemplateRegistry,
    build_template_variables, render_text,
)
from salesflow.config import SEQUENCE_BOOKING_URL
from salesflow.db.entities import Contact
from salesflow.errors import NotFound


class TestBuiltInSequences:

    def test_four_sequences_ship(self):
        ids = [s["id"] for s in TemplateRegistry().list_sequences()]
        assert ids == ["cold_outreach", "enterprise_outreach", "solo_outreach", "regional_outreach"]

    def test_cold_outreach_has_follow_up_task(self):
        cold = TemplateRegistry().get_sequence("cold_outreach")
        assert len(cold.steps) == 5
        task = cold.step_at(2)
        assert task.type == "task"
        assert task.title == "Follow-up check"
        assert task.delay_days == 4

    def test_every_email_step_resolves(self):
        registry = TemplateRegistry()
        for sequence in SEQUENCES:
            for step in sequence.steps:
                if step.type == "email":
                    assert step.template_id in EMAIL_TEMPLATES
                    assert registry.resolve_template(step.template_id)["subject"]

    def test_step_at_out_of_range(self):
        cold = TemplateRegistry().get_sequence("cold_outreach")
        assert cold.step_at(5) is None
        assert cold.step_at(-1) is None

    def test_to_dict_indexes_steps(self):
        data = TemplateRegistry().get_sequence("solo_outreach").to_dict()
        assert [s["index"] for s in data["steps"]] == [0, 1]
        assert data["steps"][1]["delay_days"] == 4


class TestStepValidation:

    def test_unknown_step_type(self):
        with pytest.raises(ValueError):
            StepDef("sms", 0, template_id="x")

    def test_email_needs_template(self):
        with pytest.raises(ValueError):
            StepDef("email", 0)

    def test_task_needs_title(self):
        with pytest.raises(ValueError):
            StepDef("task", 1)

    def test_negative_delay(self):
        with pytest.raises(ValueError):
            StepDef("email", -1, template_id="x")


class TestRegistry:

    def test_unknown_lookups(self):
        registry = TemplateRegistry()
        with pytest.raises(NotFound):
            registry.get_sequence("nope")
        with pytest.raises(NotFound):
            registry.resolve_template("nope")
        assert registry.find_sequence("nope") is None

    def test_register_sequence_checks_templates(self):
        registry = TemplateRegistry()
        with pytest.raises(NotFound):
            registry.register_sequence(SequenceTemplate("bad", "Bad", (
                StepDef("email", 0, template_id="missing_template"),
            )))
        registry.register_template("custom_1", "Hi", "Body")
        registry.register_sequence(SequenceTemplate("custom", "Custom", (
            StepDef("email", 0, template_id="custom_1"),
            StepDef("task", 1, title="Call"),
        )))
        assert registry.get_sequence("custom").name == "Custom"

    def test_remove_sequence(self):
        registry = TemplateRegistry()
        assert registry.remove_sequence("solo_outreach") is True
        assert registry.remove_sequence("solo_outreach") is False
        assert registry.find_sequence("solo_outreach") is None

    def test_registries_do_not_share_state(self):
        first = TemplateRegistry()
        first.remove_sequence("cold_outreach")
        assert TemplateRegistry().find_sequence("cold_outreach") is not None


class TestRendering:

    def test_render_fills_placeholders(self):
        contact = Contact(email="jane@acme.test", first_name="Jane", company="Acme",
                          city="Austin")
        rendered = TemplateRegistry().render("seq_cold_2_value", build_template_variables(contact))
        assert rendered["subject"] == "In Austin: less admin, more selling"
        assert rendered["body"].startswith("Hi Jane,")
        assert SEQUENCE_BOOKING_URL in rendered["body"]
        assert "{{" not in rendered["body"]

    def test_unknown_placeholder_renders_empty(self):
        assert render_text("Hi {{ nickname }}!", {}) == "Hi !"

    def test_salutation_without_first_name(self):
        assert build_template_variables(Contact(email="x@y.z", last_name="Doe"))["salutation"] == "Hello Doe"
        assert build_template_variables(Contact(email="x@y.z", company="Acme"))["salutation"] == "Hello Acme"

    def test_overrides_win(self):
        variables = build_template_variables(Contact(email="x@y.z", first_name="Jane"),
                                             {"booking_url": "https://cal.test/jane"})
        assert variables["booking_url"] == "https://cal.test/jane"
        assert variables["first_name"] == "Jane"
