"""Maps the redemption page's status text to an outcome kind.

The phrase table is the only place that depends on the page's wording.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

from .schemas import AttemptOutcome, OutcomeKind, RetryReason, TerminalReason

logger = logging.getLogger("redeembot.classifier")


@dataclass(frozen=True)
class Phrase:
    text: str
    kind: OutcomeKind
    reason: Union[RetryReason, TerminalReason]


# Order matters: first match wins. Matching is case-sensitive.
DEFAULT_PHRASES: Sequence[Phrase] = (
    Phrase("Gift Code not found, this is case-sensitive!", OutcomeKind.TERMINAL, TerminalReason.CODE_NOT_FOUND),
    Phrase("Expired, unable to claim.", OutcomeKind.TERMINAL, TerminalReason.CODE_EXPIRED),
    Phrase("Server busy. Please try again later.", OutcomeKind.RETRYABLE, RetryReason.SERVER_BUSY),
)


class OutcomeClassifier:
    def __init__(self, phrases: Optional[Iterable[Phrase]] = None):
        self.phrases: List[Phrase] = list(DEFAULT_PHRASES if phrases is None else phrases)

    @classmethod
    def with_extra_terminal(cls, extra: Iterable[str]) -> "OutcomeClassifier":
        """Default table plus operator-supplied terminal phrases."""
        phrases = list(DEFAULT_PHRASES)
        phrases.extend(Phrase(t, OutcomeKind.TERMINAL, TerminalReason.UNCLASSIFIED) for t in extra if t)
        return cls(phrases)

    def classify(self, raw: str) -> AttemptOutcome:
        raw = raw or ""
        for p in self.phrases:
            if p.text in raw:
                logger.debug("classified %r as %s/%s", raw, p.kind.value, p.reason.value)
                if p.kind is OutcomeKind.TERMINAL:
                    return AttemptOutcome.terminal(p.reason, raw)  # type: ignore[arg-type]
                return AttemptOutcome.retryable(p.reason, raw)  # type: ignore[arg-type]
        return AttemptOutcome.success(raw)


_default = OutcomeClassifier()


def classify(raw: str) -> AttemptOutcome:
    return _default.classify(raw)
