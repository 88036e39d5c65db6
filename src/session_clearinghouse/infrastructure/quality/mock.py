"""Mock Quality Oracle for dry runs and tests.

Returns configurable verdicts with zero network calls.
"""

from __future__ import annotations

import asyncio

from session_clearinghouse.domain.models import QualityVerdict
from session_clearinghouse.logging_config import get_logger

logger = get_logger(__name__)


class MockQualityOracle:
    """Instant mock oracle.

    Every session gets the default verdict unless one was set for it:
        oracle.set_verdict("meeting-42", score=40, passed=False)
    """

    def __init__(
        self,
        default_score: float = 85.0,
        default_passed: bool = True,
        delay: float = 0.0,
    ) -> None:
        self.default_score = default_score
        self.default_passed = default_passed
        self.delay = delay
        self._verdicts: dict[str, tuple[float, bool]] = {}
        self.evaluated: list[str] = []

    def set_verdict(self, session_ref: str, score: float, passed: bool) -> None:
        self._verdicts[session_ref] = (score, passed)

    async def evaluate(self, session_ref: str) -> QualityVerdict:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.evaluated.append(session_ref)

        score, passed = self._verdicts.get(
            session_ref, (self.default_score, self.default_passed)
        )
        logger.info("oracle.mock.verdict", session_ref=session_ref, score=score, passed=passed)
        return QualityVerdict(
            session_ref=session_ref,
            score=score,
            passed=passed,
            reasoning=(
                "Mock quality check passed (dry-run mode)"
                if passed
                else "Mock quality check failed (dry-run mode)"
            ),
        )
