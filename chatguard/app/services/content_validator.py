"""Content admission validator.

Decides whether a candidate message body may be submitted, independent
of who sends it or how often. Everything here is pure and deterministic:
the same input always yields the same ValidationResult.

Pipeline (short-circuits on the first failure):

1. normalize: trim, collapse runs of 3+ newlines to exactly 2
2. length floor            -> too_short
3. length ceiling          -> too_long
4. line-break ceiling      -> too_many_line_breaks
5. single-character share  -> excessive_repetition (empty_message if no text)
6. many very short lines   -> short_line_spam

Markup stripping runs before step 1 (see sanitize_submission); a body
that is empty after stripping is rejected as invalid_content.
"""

import re
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from chatguard.app.services.sanitizer import strip_markup

_EXCESS_NEWLINES = re.compile(r"\n{3,}")


class ValidationErrorKind(Enum):
    """Reason a message was refused."""
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    TOO_MANY_LINE_BREAKS = "too_many_line_breaks"
    EXCESSIVE_REPETITION = "excessive_repetition"
    SHORT_LINE_SPAM = "short_line_spam"
    EMPTY_MESSAGE = "empty_message"
    INVALID_CONTENT = "invalid_content"


@dataclass(frozen=True)
class MessageValidationOptions:
    """Thresholds for content admission."""
    min_length: int = 5
    max_length: int = 350
    max_line_breaks: int = 5
    max_repetition_percentage: float = 70.0
    min_line_length: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "MessageValidationOptions":
        return cls(
            min_length=settings.message_min_length,
            max_length=settings.message_max_length,
            max_line_breaks=settings.message_max_line_breaks,
            max_repetition_percentage=settings.message_max_repetition_percentage,
            min_line_length=settings.message_min_line_length,
        )


DEFAULT_OPTIONS = MessageValidationOptions()


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one candidate message.

    On success `normalized_message` is the canonical body; it is the
    string that must be persisted, not the caller's original input.
    """
    is_valid: bool
    error_kind: Optional[ValidationErrorKind] = None
    message: Optional[str] = None
    normalized_message: Optional[str] = None

    @classmethod
    def accept(cls, normalized: str) -> "ValidationResult":
        return cls(is_valid=True, normalized_message=normalized)

    @classmethod
    def reject(cls, kind: ValidationErrorKind, message: str) -> "ValidationResult":
        return cls(is_valid=False, error_kind=kind, message=message)


_PASS = ValidationResult(is_valid=True)


def normalize_message(message: str) -> str:
    """Trim the message and collapse runs of 3+ newlines into 2."""
    return _EXCESS_NEWLINES.sub("\n\n", message.strip())


def check_repetition(message: str, threshold: float = 70.0) -> ValidationResult:
    """Reject a message dominated by a single non-whitespace character.

    Args:
        message: Normalized message
        threshold: Highest allowed share (percent) of the most common character

    Returns:
        Passing result, or excessive_repetition / empty_message
    """
    counts = Counter(char for char in message if not char.isspace())
    total = sum(counts.values())
    if total == 0:
        return ValidationResult.reject(
            ValidationErrorKind.EMPTY_MESSAGE, "Message cannot be empty."
        )

    _, max_count = counts.most_common(1)[0]
    if max_count * 100 / total > threshold:
        return ValidationResult.reject(
            ValidationErrorKind.EXCESSIVE_REPETITION,
            "Your message contains too much repetition. Please vary your content.",
        )
    return _PASS


def check_short_line_spam(message: str, min_avg_length: float = 2.0) -> ValidationResult:
    """Reject many-line messages whose lines are on average very short.

    Both conditions are required: more than three non-blank lines and a
    mean trimmed line length below `min_avg_length`.
    """
    lines = [line.strip() for line in message.split("\n") if line.strip()]
    if len(lines) <= 1:
        return _PASS

    average = sum(len(line) for line in lines) / len(lines)
    if average < min_avg_length and len(lines) > 3:
        return ValidationResult.reject(
            ValidationErrorKind.SHORT_LINE_SPAM,
            "Your message contains too many short lines. Please use normal formatting.",
        )
    return _PASS


def validate_message(
    message: str,
    options: MessageValidationOptions = DEFAULT_OPTIONS,
) -> ValidationResult:
    """Run the admission pipeline over an already-sanitized message."""
    normalized = normalize_message(message)

    if len(normalized) < options.min_length:
        return ValidationResult.reject(
            ValidationErrorKind.TOO_SHORT,
            f"Message must be at least {options.min_length} characters.",
        )

    if len(normalized) > options.max_length:
        return ValidationResult.reject(
            ValidationErrorKind.TOO_LONG,
            f"Message cannot exceed {options.max_length} characters.",
        )

    if normalized.count("\n") > options.max_line_breaks:
        return ValidationResult.reject(
            ValidationErrorKind.TOO_MANY_LINE_BREAKS,
            f"Message cannot contain more than {options.max_line_breaks} line breaks.",
        )

    result = check_repetition(normalized, options.max_repetition_percentage)
    if not result.is_valid:
        return result

    result = check_short_line_spam(normalized, options.min_line_length)
    if not result.is_valid:
        return result

    return ValidationResult.accept(normalized)


def sanitize_submission(raw: Any) -> ValidationResult:
    """Strip markup from a raw client body.

    Accepts with the stripped text as `normalized_message`. Non-string
    input and bodies with no text left after stripping are rejected as
    invalid_content.
    """
    if not isinstance(raw, str):
        return ValidationResult.reject(
            ValidationErrorKind.INVALID_CONTENT, "Message contains invalid content."
        )
    sanitized = strip_markup(raw.strip())
    if not sanitized:
        return ValidationResult.reject(
            ValidationErrorKind.INVALID_CONTENT, "Message contains invalid content."
        )
    return ValidationResult.accept(sanitized)


def validate_submission(
    raw: Any,
    options: MessageValidationOptions = DEFAULT_OPTIONS,
) -> ValidationResult:
    """Strip markup from a raw client body, then validate it."""
    result = sanitize_submission(raw)
    if not result.is_valid:
        return result
    return validate_message(result.normalized_message, options)
