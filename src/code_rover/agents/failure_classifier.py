"""Deterministic classification of unit failures for the retry policy."""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from enum import Enum

from code_rover.errors import AgentOutputParseError, RoverError, UnknownAgentError

FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    TERMINAL = "terminal"


_CONFIGURATION_PATTERN = "unknown agent"
_TRANSIENT_MESSAGE_PATTERNS: tuple[str, ...] = (
    "unterminated string",
    "json",
    "econnreset",
    "connection reset",
    "timed out",
    "timeout",
)
_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    json.JSONDecodeError,
    AgentOutputParseError,
    ConnectionError,
    TimeoutError,
    subprocess.TimeoutExpired,
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def transient(self) -> bool:
        return self.failure_class == FailureClass.TRANSIENT

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify a unit failure as transient (retry in place) or terminal."""

    if isinstance(error, UnknownAgentError) or _CONFIGURATION_PATTERN in str(error).lower():
        return FailureClassification(
            failure_class=FailureClass.TERMINAL,
            reason_code="unknown_agent",
            matched_rule="configuration_error",
        )

    if isinstance(error, _TRANSIENT_TYPES):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code=type(error).__name__,
            matched_rule="transient_type",
        )

    if isinstance(error, RoverError):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT if error.transient else FailureClass.TERMINAL,
            reason_code=type(error).__name__,
            matched_rule="explicit_flag",
        )

    pattern = _first_match(str(error).lower(), _TRANSIENT_MESSAGE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="transient_message",
            matched_rule="message_pattern",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.TERMINAL,
        reason_code=type(error).__name__,
        matched_rule="fallback_terminal",
    )


def is_transient_error(error: BaseException) -> bool:
    return classify_failure(error).transient


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
