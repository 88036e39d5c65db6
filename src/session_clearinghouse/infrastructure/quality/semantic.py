"""SemanticQualityOracle — an LLM judge scoring a delivered session's transcript.

Use case: a 1:1 coaching call was recorded by the meeting bot; the judge reads
the transcript and decides whether the provider delivered the booked session.

Evaluation flow:
    1. Load the transcript for the session reference.
    2. Call the LLM via LiteLLM (supports Gemini, GPT-4o, Llama, etc.)
    3. Parse the VERDICT / SCORE / REASONING answer.
    4. Return a 0-100 score with the pass/fail verdict.

Unlike a failed verdict, a judge that could not answer is an OracleError:
money is never released or refunded on an unknown outcome.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import litellm
from tenacity import retry, stop_after_attempt, wait_exponential

from session_clearinghouse.config import get_settings
from session_clearinghouse.domain.exceptions import OracleError
from session_clearinghouse.domain.models import QualityVerdict
from session_clearinghouse.logging_config import get_logger

if TYPE_CHECKING:
    from session_clearinghouse.domain.protocols import LedgerStore

logger = get_logger(__name__)

# --- Judge System Prompt ---
JUDGE_SYSTEM_PROMPT = """You are an impartial quality judge for a paid session marketplace.

Funds for the session are held in escrow and are released to the provider only
if you judge that the session was actually delivered with reasonable quality.
If the transcript is empty, off-topic, or the provider did not show up, the
session FAILS.

You MUST respond in EXACTLY this format (no extra text before or after):

VERDICT: TRUE or FALSE
SCORE: a number from 0 to 100
REASONING: one paragraph explaining your decision

Rules:
- VERDICT must be exactly "TRUE" or "FALSE" (no "MAYBE", "PARTIAL", etc.)
- SCORE 100 = excellent session, 0 = nothing delivered
- Be concise but thorough in REASONING
"""

JUDGE_USER_TEMPLATE = """## Session
{session_ref}

## Criteria
{criteria}

## Transcript
{transcript}

Evaluate whether the session described by this transcript meets the criteria above."""

DEFAULT_CRITERIA = (
    "Both participants attended, the provider engaged with the client's questions, "
    "and the session covered its stated topic for most of the booked time."
)


class LedgerTranscriptSource:
    """Reads transcripts stored under transcript/<session_ref> in the ledger."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def save(self, session_ref: str, text: str) -> None:
        await self._store.put_if_status(
            f"transcript/{session_ref}", None, {"session_ref": session_ref, "text": text}
        )

    async def load(self, session_ref: str) -> str | None:
        record = await self._store.get(f"transcript/{session_ref}")
        return record.get("text") if record else None


class SemanticQualityOracle:
    """QualityOracle that uses an LLM judge over the session transcript."""

    def __init__(
        self,
        transcripts: LedgerTranscriptSource,
        criteria: str = DEFAULT_CRITERIA,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> None:
        """Initialize with optional overrides (defaults come from config)."""
        self._transcripts = transcripts
        self._criteria = criteria
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature

    def _get_model_config(self) -> dict:
        """Resolve model configuration from overrides or settings."""
        settings = get_settings()
        return {
            "model": self._model or settings.litellm_model,
            "fallbacks": settings.litellm_fallback_model_list,
            "max_tokens": self._max_tokens or settings.litellm_max_tokens,
            "temperature": (
                self._temperature if self._temperature is not None else settings.litellm_temperature
            ),
        }

    async def evaluate(self, session_ref: str) -> QualityVerdict:
        transcript = await self._transcripts.load(session_ref)
        if not transcript:
            raise OracleError(f"No transcript recorded for session {session_ref}", session_ref)

        logger.info("oracle.semantic.start", session_ref=session_ref, chars=len(transcript))

        try:
            llm_response = await self._call_llm(session_ref, transcript)
        except Exception as exc:
            logger.exception("oracle.semantic.error", session_ref=session_ref)
            raise OracleError(f"LLM judge failed: {exc}", session_ref) from exc

        verdict, score, reasoning = self._parse_response(llm_response)
        logger.info(
            "oracle.semantic.result",
            session_ref=session_ref,
            verdict=verdict,
            score=score,
        )
        return QualityVerdict(
            session_ref=session_ref,
            score=score,
            passed=verdict,
            reasoning=reasoning,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _call_llm(self, session_ref: str, transcript: str) -> str:
        """Call the LLM via LiteLLM with retry logic.

        Uses tenacity for exponential backoff on transient failures.
        """
        config = self._get_model_config()
        extra = {"fallbacks": config["fallbacks"]} if config["fallbacks"] else {}

        user_message = JUDGE_USER_TEMPLATE.format(
            session_ref=session_ref,
            criteria=self._criteria,
            transcript=transcript,
        )

        response = await litellm.acompletion(
            model=config["model"],
            messages=[
                {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
                {"role": "user", "content": user_message},
            ],
            max_tokens=config["max_tokens"],
            temperature=config["temperature"],
            **extra,
        )

        content = response.choices[0].message.content
        if not content:
            raise ValueError("LLM returned empty response")

        return content.strip()

    def _parse_response(self, response: str) -> tuple[bool, float, str]:
        """Parse the structured LLM judge response.

        Expected format:
            VERDICT: TRUE
            SCORE: 85
            REASONING: The provider answered every question...

        Ambiguous answers are treated as FAIL.

        Returns:
            (verdict_bool, score_0_to_100, reasoning_string)
        """
        verdict = False
        score = 0.0
        reasoning = ""

        for line in response.split("\n"):
            line = line.strip()
            if line.upper().startswith("VERDICT:"):
                verdict = line.split(":", 1)[1].strip().upper() == "TRUE"
            elif line.upper().startswith("SCORE:"):
                try:
                    score = float(line.split(":", 1)[1].strip())
                    score = max(0.0, min(100.0, score))
                except (ValueError, IndexError):
                    score = 0.0
            elif line.upper().startswith("REASONING:"):
                reasoning = line.split(":", 1)[1].strip()

        # Reasoning may start on the line after the label
        if not reasoning and "REASONING:" in response.upper():
            idx = response.upper().index("REASONING:") + len("REASONING:")
            reasoning = response[idx:].strip()

        if not reasoning:
            reasoning = (
                f"Could not parse structured reasoning from LLM response. Raw: {response[:200]}"
            )

        return verdict, score, reasoning
