"""Tests for the deterministic rule engine."""

from __future__ import annotations

from jobsync.email.classifier import (
    CHECK_ORDER,
    RULE_CONFIDENCE,
    classify_by_rules,
    is_high_variance_correction,
)
from jobsync.extraction.types import ClassificationType

from conftest import make_message


class TestClassifyByRules:
    def test_job_response(self):
        result = classify_by_rules(make_message("Thank you for applying to Acme"))
        assert result is not None
        assert result.type is ClassificationType.JOB_RESPONSE
        assert result.confidence == RULE_CONFIDENCE
        assert result.source == "rule"
        assert result.reason == "thank-you-applying"

    def test_interview(self):
        result = classify_by_rules(make_message("Interview Invitation: Backend Engineer"))
        assert result.type is ClassificationType.INTERVIEW

    def test_rejection_needs_body_signal(self):
        msg = make_message(
            "Update on your application",
            text_body="Unfortunately we will not be moving forward at this time.",
        )
        assert classify_by_rules(msg).type is ClassificationType.REJECTION

        neutral = make_message("Update on your application", text_body="Your profile looks great.")
        assert classify_by_rules(neutral) is None

    def test_follow_up(self):
        result = classify_by_rules(make_message("Reminder: complete your application"))
        assert result.type is ClassificationType.FOLLOW_UP

    def test_other_job_alert(self):
        msg = make_message(
            "10 new roles for you",
            from_email="jobs-noreply@linkedin.com",
            from_name="LinkedIn Job Alerts",
        )
        result = classify_by_rules(msg)
        assert result.type is ClassificationType.OTHER

    def test_other_wins_over_interview(self):
        msg = make_message(
            "Interview invitation for the maintainers call",
            from_email="noreply@github.com",
            from_name="GitHub",
        )
        result = classify_by_rules(msg)
        assert result.type is ClassificationType.OTHER
        assert result.reason == "github"

    def test_event_invite_condition_blocks_interviews(self):
        webinar = classify_by_rules(make_message("Join our webinar on careers", from_email="events@corp.io"))
        assert webinar.type is ClassificationType.OTHER

        screen = classify_by_rules(make_message("Webinar-style phone screen", from_email="hr@corp.io"))
        assert screen.type is ClassificationType.INTERVIEW

    def test_personal_subject_does_not_swallow_your(self):
        assert classify_by_rules(make_message("yo check this")).type is ClassificationType.OTHER
        result = classify_by_rules(make_message("Your application for Data Analyst"))
        assert result.type is ClassificationType.JOB_RESPONSE

    def test_no_rule_returns_none(self):
        msg = make_message(
            "Quarterly planning notes",
            from_email="boss@corp.io",
            from_name="The Boss",
        )
        assert classify_by_rules(msg) is None

    def test_check_order_starts_with_other(self):
        assert CHECK_ORDER[0] is ClassificationType.OTHER
        assert CHECK_ORDER.index(ClassificationType.REJECTION) < CHECK_ORDER.index(
            ClassificationType.FOLLOW_UP
        )


class TestHighVariance:
    def test_rule_caught_message_is_not_high_variance(self):
        assert is_high_variance_correction(make_message("Thank you for applying to Acme")) is False

    def test_unmatched_message_is_high_variance(self):
        msg = make_message("Quick question about Tuesday", from_email="jane@startup.io", from_name="Jane Doe")
        assert is_high_variance_correction(msg) is True
