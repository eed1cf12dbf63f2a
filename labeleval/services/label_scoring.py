from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def extract_label(response_text: Optional[str], opening_tag: Optional[str], closing_tag: Optional[str]) -> Optional[bool]:
    """Pull a true/false verdict out of ``response_text``.

    The verdict is the text between the first ``opening_tag`` and the first
    ``closing_tag`` after it, trimmed and case-folded. Anything other than
    ``true``/``false`` (including missing tags) yields ``None``.
    """
    if not response_text or not opening_tag or not closing_tag:
        return None

    start_index = response_text.find(opening_tag)
    if start_index == -1:
        logger.debug("Opening tag %r not found in response", opening_tag)
        return None

    content_start = start_index + len(opening_tag)
    end_index = response_text.find(closing_tag, content_start)
    if end_index == -1:
        logger.debug("Closing tag %r not found after opening tag", closing_tag)
        return None

    value = response_text[content_start:end_index].strip().lower()
    if value == "true":
        return True
    if value == "false":
        return False

    logger.warning("Extracted value %r is not a valid boolean", value)
    return None


@dataclass(frozen=True)
class ScoringRow:
    llm_label: Optional[bool]
    error_message: Optional[str]
    expected_label: Optional[bool]


@dataclass(frozen=True)
class AccuracyStats:
    total_results: int
    correct_predictions: int
    error_count: int
    accuracy: float

    def incorrect_for(self, processed_messages: int) -> int:
        return max(0, int(processed_messages) - self.correct_predictions - self.error_count)

    def to_payload(self) -> dict:
        return {
            "totalResults": self.total_results,
            "correctPredictions": self.correct_predictions,
            "incorrectPredictions": self.incorrect_for(self.total_results),
            "errorCount": self.error_count,
            "accuracy": self.accuracy,
        }


def calculate_accuracy_stats(rows: Iterable[ScoringRow]) -> AccuracyStats:
    total = 0
    correct = 0
    errors = 0
    for row in rows:
        total += 1
        if row.error_message:
            errors += 1
            continue
        if row.llm_label is None or row.expected_label is None:
            continue
        if bool(row.llm_label) == bool(row.expected_label):
            correct += 1

    valid = total - errors
    accuracy = (correct / valid) * 100 if valid > 0 else 0.0
    return AccuracyStats(
        total_results=total,
        correct_predictions=correct,
        error_count=errors,
        accuracy=round(accuracy, 2),
    )
