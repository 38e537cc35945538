"""
Quality gates applied to every generated response.

Stages, in order:
- Content filter: replaces replies leaking secrets or card numbers with a
  hand-off message
- Fact check: low-confidence replies get a verification disclaimer
- Personalization: addresses the customer by name
- Confidence gate: marks low-confidence replies for human escalation

Each stage is a pure transform over ``GeneratedResponse``. A stage that fails
is skipped and logged, so a reply is always returned.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Pattern, Tuple

import structlog

from aida_api.models import CustomerProfile, GeneratedResponse

logger = structlog.get_logger(__name__)

FALLBACK_MESSAGE = (
    "I apologize, but I need to connect you with one of our team members "
    "to better assist you with this request."
)
FALLBACK_CONFIDENCE = 0.5
DISCLAIMER = "\n\nPlease verify this information with our team if needed."
FACT_CHECK_THRESHOLD = 0.6
FACT_CHECK_MIN_CONFIDENCE = 0.4

SENSITIVE_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    ("credential", re.compile(r"\b(password|passwd|token|api[_-]?key|secret)\b\s*[:=]\s*\S+", re.IGNORECASE)),
    ("api_key", re.compile(r"\b(sk-[A-Za-z0-9_-]{20,}|AKIA[0-9A-Z]{16})\b")),
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
]
CARD_CANDIDATE = re.compile(r"\b(?:\d[ -]?){12,18}\d\b")


def luhn_valid(number: str) -> bool:
    """Luhn checksum over the digits of ``number``."""
    digits = [int(c) for c in number if c.isdigit()]
    if not 13 <= len(digits) <= 19:
        return False
    total = 0
    for index, digit in enumerate(reversed(digits)):
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def find_sensitive_data(text: str) -> List[str]:
    """Names of the sensitive-data patterns found in ``text``."""
    found = [name for name, pattern in SENSITIVE_PATTERNS if pattern.search(text)]
    if any(luhn_valid(match.group(0)) for match in CARD_CANDIDATE.finditer(text)):
        found.append("card_number")
    return found


@dataclass
class QualityStats:
    processed: int = 0
    filtered: int = 0
    fact_checked: int = 0
    personalized: int = 0
    escalated: int = 0
    stage_failures: int = 0


class QualityControlPipeline:
    """
    Runs the quality gates over a generated response.

    Usage:
        pipeline = QualityControlPipeline(confidence_threshold=0.7)
        final = pipeline.process(response, customer=CustomerProfile(name="Ana"))
    """

    def __init__(
        self,
        confidence_threshold: float = 0.7,
        enable_content_filter: bool = True,
        enable_fact_checking: bool = True,
        enable_personalization: bool = True,
    ):
        self.confidence_threshold = confidence_threshold
        self.enable_content_filter = enable_content_filter
        self.enable_fact_checking = enable_fact_checking
        self.enable_personalization = enable_personalization
        self._stats = QualityStats()

    def process(
        self,
        response: GeneratedResponse,
        customer: Optional[CustomerProfile] = None,
        confidence_threshold: Optional[float] = None,
    ) -> GeneratedResponse:
        """
        Apply all enabled stages.

        Args:
            response: Reply as generated
            customer: Customer profile for personalization
            confidence_threshold: Per-assistant override of the escalation threshold

        Returns:
            Finalized reply
        """
        self._stats.processed += 1
        threshold = self.confidence_threshold if confidence_threshold is None else confidence_threshold

        stages: List[Tuple[str, bool, Callable[[GeneratedResponse], GeneratedResponse]]] = [
            ("content_filter", self.enable_content_filter, self.filter_content),
            ("fact_check", self.enable_fact_checking, self.fact_check),
            ("personalize", self.enable_personalization, lambda r: self.personalize(r, customer)),
            ("confidence_gate", True, lambda r: self.gate_confidence(r, threshold)),
        ]
        for name, enabled, stage in stages:
            if enabled:
                response = self._run_stage(name, stage, response)
        return response

    def _run_stage(
        self,
        name: str,
        stage: Callable[[GeneratedResponse], GeneratedResponse],
        response: GeneratedResponse,
    ) -> GeneratedResponse:
        try:
            return stage(response)
        except Exception as e:
            self._stats.stage_failures += 1
            logger.error("Quality stage failed, passing response through", stage=name, error=str(e))
            return response

    def filter_content(self, response: GeneratedResponse) -> GeneratedResponse:
        findings = find_sensitive_data(response.content)
        if not findings:
            return response

        self._stats.filtered += 1
        logger.warning(
            "Response blocked by content filter",
            security_event=True,
            patterns=findings,
        )
        return response.model_copy(update={
            "content": FALLBACK_MESSAGE,
            "confidence": FALLBACK_CONFIDENCE,
            "should_escalate": True,
            "sources": [],
            "quality_flags": response.quality_flags + ["content_filtered"],
        })

    def fact_check(self, response: GeneratedResponse) -> GeneratedResponse:
        if response.confidence >= FACT_CHECK_THRESHOLD or "content_filtered" in response.quality_flags:
            return response

        self._stats.fact_checked += 1
        content = response.content
        if not content.endswith(DISCLAIMER):
            content += DISCLAIMER
        return response.model_copy(update={
            "content": content,
            "confidence": max(response.confidence, FACT_CHECK_MIN_CONFIDENCE),
            "quality_flags": response.quality_flags + ["fact_check_disclaimer"],
        })

    def personalize(self, response: GeneratedResponse, customer: Optional[CustomerProfile]) -> GeneratedResponse:
        name = (customer.name or "").strip() if customer else ""
        if not name or name.lower() in response.content.lower():
            return response

        self._stats.personalized += 1
        return response.model_copy(update={
            "content": f"{name}, {response.content}",
            "quality_flags": response.quality_flags + ["personalized"],
        })

    def gate_confidence(self, response: GeneratedResponse, threshold: float) -> GeneratedResponse:
        if response.confidence >= threshold:
            return response

        self._stats.escalated += 1
        return response.model_copy(update={
            "should_escalate": True,
            "quality_flags": response.quality_flags + ["low_confidence"],
        })

    def get_stats(self) -> QualityStats:
        return self._stats
