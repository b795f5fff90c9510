"""Tests for alert message composition."""

from datetime import datetime, timezone

from petwatch.delivery.composer import (
    CONTACT_NAME_PLACEHOLDER,
    compose_alert_template,
    compose_local_alert,
    render_for,
)
from petwatch.watch.schemas import CareSnapshot, EscalationEvent, EventKind, Medication

NOW = datetime(2025, 3, 1, 13, 0, tzinfo=timezone.utc)


class TestAlertTemplate:
    """Test the SMS body."""

    def test_template_keeps_placeholder(self):
        template = compose_alert_template("Rex", CareSnapshot(), NOW)

        assert CONTACT_NAME_PLACEHOLDER in template
        assert "Rex's safety timer has expired" in template
        assert "Care instructions" not in template

    def test_care_details_included(self):
        care = CareSnapshot(
            food_type="Kibble",
            food_amount="1 cup",
            feeding_times=("08:00", "18:00"),
            medications=(Medication(name="Apoquel", dosage="16mg", timing="morning"),),
            vet_name="Dr. Lee",
            vet_phone="555-0100",
        )

        template = compose_alert_template("Rex", care, NOW)

        assert "Food: Kibble - 1 cup" in template
        assert "Feeding times: 08:00, 18:00" in template
        assert "Medication: Apoquel (16mg, morning)" in template
        assert "Vet: Dr. Lee, 555-0100" in template

    def test_render_for_substitutes_name(self):
        template = compose_alert_template("Rex", CareSnapshot(), NOW)

        body = render_for(template, "Alice")

        assert "Hi Alice," in body
        assert CONTACT_NAME_PLACEHOLDER not in body

    def test_render_for_blank_name(self):
        assert render_for(f"Hi {CONTACT_NAME_PLACEHOLDER}", "") == "Hi there"

    def test_placeholder_matches_backend_token(self):
        assert CONTACT_NAME_PLACEHOLDER == "{contactName}"


class TestLocalAlert:
    """Test local notification content."""

    def test_reminder_not_urgent(self):
        alert = compose_local_alert(EscalationEvent(fire_at=NOW, kind=EventKind.REMINDER), "Rex")
        assert "5 Minutes Left" in alert.title
        assert alert.urgent is False

    def test_main_expiry(self):
        alert = compose_local_alert(EscalationEvent(fire_at=NOW, kind=EventKind.MAIN_EXPIRY), "Rex")
        assert "TIMER EXPIRED" in alert.title
        assert alert.urgent is True

    def test_follow_up_shows_overdue_minutes(self):
        event = EscalationEvent(
            fire_at=NOW, kind=EventKind.FOLLOW_UP, follow_up=3, minutes_overdue=15
        )
        alert = compose_local_alert(event, "Rex")
        assert "15 MINUTES OVERDUE" in alert.title
