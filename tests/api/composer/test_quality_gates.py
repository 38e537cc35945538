"""
Tests for response quality gates.

Tests verify:
- Sensitive data replaces the reply with the hand-off message
- Low-confidence replies get a disclaimer and are escalated
- Personalization by customer name
- A failing stage passes the reply through
"""

import pytest

from aida_api.composer.quality_gates import (
    DISCLAIMER,
    FALLBACK_CONFIDENCE,
    FALLBACK_MESSAGE,
    QualityControlPipeline,
    find_sensitive_data,
    luhn_valid,
)
from aida_api.models import CustomerProfile, GeneratedResponse


def reply(content="Your order ships tomorrow.", confidence=0.9):
    return GeneratedResponse(content=content, confidence=confidence)


class TestSensitiveData:
    """Test sensitive data detection."""

    def test_luhn(self):
        assert luhn_valid("4111 1111 1111 1111") is True
        assert luhn_valid("4111 1111 1111 1112") is False

    @pytest.mark.parametrize(
        "text,finding",
        [
            ("the admin password: hunter22", "credential"),
            ("use key sk-abcdefghijklmnopqrstuvwxyz123", "api_key"),
            ("SSN 123-45-6789 on file", "ssn"),
            ("card 4111-1111-1111-1111 was charged", "card_number"),
        ],
    )
    def test_detects(self, text, finding):
        assert finding in find_sensitive_data(text)

    def test_ordinary_text_passes(self):
        assert find_sensitive_data("Reset your password from the login page. Order 1234567890123 shipped.") == []


class TestQualityControlPipeline:
    """Test the gate sequence."""

    def test_clean_confident_reply_unchanged(self):
        pipeline = QualityControlPipeline()

        result = pipeline.process(reply())

        assert result.content == "Your order ships tomorrow."
        assert result.should_escalate is False
        assert result.quality_flags == []

    def test_content_filter_replaces_reply(self):
        pipeline = QualityControlPipeline()

        result = pipeline.process(reply("Sure, the api_key=abc123 is what you need."))

        assert result.content == FALLBACK_MESSAGE
        assert result.confidence == FALLBACK_CONFIDENCE
        assert result.should_escalate is True
        assert result.quality_flags == ["content_filtered", "low_confidence"]
        assert pipeline.get_stats().filtered == 1

    def test_low_confidence_gets_disclaimer_and_escalation(self):
        pipeline = QualityControlPipeline(confidence_threshold=0.7)

        result = pipeline.process(reply(confidence=0.3))

        assert result.content.endswith(DISCLAIMER)
        assert result.confidence == 0.4
        assert result.should_escalate is True
        assert result.quality_flags == ["fact_check_disclaimer", "low_confidence"]

    def test_per_assistant_threshold(self):
        pipeline = QualityControlPipeline(confidence_threshold=0.7)

        assert pipeline.process(reply(confidence=0.65), confidence_threshold=0.6).should_escalate is False
        assert pipeline.process(reply(confidence=0.65)).should_escalate is True

    def test_personalization(self):
        pipeline = QualityControlPipeline()

        result = pipeline.process(reply(), CustomerProfile(name="Ana"))

        assert result.content == "Ana, Your order ships tomorrow."
        assert "personalized" in result.quality_flags

    def test_personalization_skipped_when_name_present(self):
        pipeline = QualityControlPipeline()

        result = pipeline.process(reply("Hi Ana, your order ships tomorrow."), CustomerProfile(name="Ana"))

        assert result.content == "Hi Ana, your order ships tomorrow."

    def test_disabled_stages(self):
        pipeline = QualityControlPipeline(
            enable_content_filter=False, enable_fact_checking=False, enable_personalization=False
        )

        result = pipeline.process(reply("password: hunter22", confidence=0.3), CustomerProfile(name="Ana"))

        assert result.content == "password: hunter22"
        assert result.quality_flags == ["low_confidence"]

    def test_failing_stage_passes_through(self, monkeypatch):
        pipeline = QualityControlPipeline()

        def broken(response):
            raise RuntimeError("classifier crashed")

        monkeypatch.setattr(pipeline, "filter_content", broken)

        result = pipeline.process(reply())

        assert result.content == "Your order ships tomorrow."
        assert pipeline.get_stats().stage_failures == 1
