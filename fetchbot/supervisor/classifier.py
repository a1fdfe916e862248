"""Critical error classification."""

from __future__ import annotations

import errno
from dataclasses import dataclass
from typing import Iterable, Optional

UNKNOWN_CODE = "UNKNOWN"


@dataclass(frozen=True)
class Classification:
    critical: bool
    matched: Optional[str] = None


class ErrorClassifier:
    """Decides whether an observed failure warrants a restart.

    A failure is critical when its message contains one of the configured
    patterns, or its code equals one exactly. Matching is case-sensitive.
    """

    def __init__(self, patterns: Iterable[str]) -> None:
        self._patterns = tuple(sorted(set(patterns)))

    @property
    def patterns(self) -> tuple[str, ...]:
        return self._patterns

    def classify(self, message: str, code: Optional[str] = None) -> Classification:
        for pattern in self._patterns:
            if pattern in message or code == pattern:
                return Classification(critical=True, matched=pattern)
        return Classification(critical=False)

    def classify_exception(self, exc: object) -> Classification:
        message, code = describe_error(exc)
        return self.classify(message, code)


def describe_error(exc: object) -> tuple[str, str]:
    """Return ``(message, code)`` for an exception or arbitrary failure reason.

    OSErrors report their symbolic errno (``ENOSPC``); other exceptions use an
    explicit ``code`` attribute when present, else their class name.
    """
    if not isinstance(exc, BaseException):
        message = str(exc) if exc is not None else ""
        return message or "unknown error", UNKNOWN_CODE

    message = str(exc) or type(exc).__name__
    if isinstance(exc, OSError) and exc.errno in errno.errorcode:
        return message, errno.errorcode[exc.errno]
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return message, code
    return message, type(exc).__name__
