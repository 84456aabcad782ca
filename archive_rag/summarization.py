"""Long-input summarization that keeps text within embedding/context limits.

Strategy, by estimated tokens of the input:
- up to ``threshold`` (6k): returned unchanged
- up to ``two_stage_threshold`` (20k): one condensation pass
- above that: split into ~6k-token chunks, condense each to ~500 tokens in
  parallel, then condense the concatenated partial summaries

If any model call fails the input is hard-truncated instead, so summarize() always
returns usable text and never raises for provider problems.
"""
import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Optional

from openai import AsyncOpenAI

from archive_rag.config import settings
from archive_rag.errors import PROVIDER_ERRORS, SummarizationFailure
from archive_rag.text import CHARS_PER_TOKEN, TokenEstimator, chunk_text, estimate_tokens

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You are a summarization assistant. Extract the key themes, topics, questions, and "
    "important details from the text. Preserve:\n"
    "- Main topics and subjects discussed\n"
    "- Questions or requests from the user\n"
    "- Names, concepts, and key terms\n"
    "- Overall intent and context\n\n"
    "Be concise but comprehensive. Focus on preserving meaning for semantic search."
)


@dataclass
class SummaryResult:
    """Summarized text plus token accounting.

    Attributes:
        summary: Text to embed in place of the original.
        original_tokens: Estimated tokens of the input.
        summary_tokens: Estimated tokens of ``summary``.
        strategy: 'passthrough', 'single_pass', 'two_stage' or 'truncated'.
    """
    summary: str
    original_tokens: int
    summary_tokens: int
    strategy: str


def truncate_to_token_limit(text: str, max_tokens: int, estimator: TokenEstimator = estimate_tokens) -> str:
    """Cut text to the character length implied by ``max_tokens``.

    Backs up to the last period when one falls in the final 20% of the window,
    otherwise appends "...". Never raises.
    """
    if estimator(text) <= max_tokens:
        return text
    max_chars = max(0, math.floor(max_tokens * CHARS_PER_TOKEN))
    truncated = text[:max_chars]
    last_period = truncated.rfind(".")
    if last_period > max_chars * 0.8:
        return truncated[:last_period + 1]
    # Leave room for the ellipsis inside the budget
    return text[:max(0, max_chars - 3)].rstrip() + "..."


class Summarizer:
    """Condenses over-long inputs with a small chat model."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: Optional[str] = None,
        estimator: TokenEstimator = estimate_tokens,
        threshold: Optional[int] = None,
        two_stage_threshold: Optional[int] = None,
        max_output_tokens: Optional[int] = None,
        partial_tokens: Optional[int] = None,
    ):
        self.client = client
        self.model = model or settings.SUMMARY_MODEL
        self.estimator = estimator
        self.threshold = threshold or settings.SUMMARY_THRESHOLD_TOKENS
        self.two_stage_threshold = two_stage_threshold or settings.TWO_STAGE_THRESHOLD_TOKENS
        self.max_output_tokens = max_output_tokens or settings.SUMMARY_MAX_TOKENS
        self.partial_tokens = partial_tokens or settings.PARTIAL_SUMMARY_TOKENS

    async def _condense(self, text: str, max_tokens: int) -> str:
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                    {"role": "user", "content": text},
                ],
                max_tokens=max_tokens,
                temperature=0.3,
            )
        except PROVIDER_ERRORS as exc:
            raise SummarizationFailure(f"Summarization call failed: {exc}") from exc
        try:
            content = resp.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as exc:
            raise SummarizationFailure(f"Malformed summarization response: {exc!r}") from exc
        if not content or not content.strip():
            raise SummarizationFailure("Summarization returned no content")
        return content.strip()

    async def _two_stage(self, text: str, max_tokens: int) -> str:
        chunks = chunk_text(text, max_tokens=self.threshold, overlap=200, estimator=self.estimator)
        logger.info("Two-stage summarization: condensing %d chunks", len(chunks))
        partials = await asyncio.gather(*(self._condense(c, self.partial_tokens) for c in chunks))
        return await self._condense("\n\n".join(partials), max_tokens)

    def _bounded(self, summary: str, original_tokens: int, max_tokens: int, strategy: str) -> SummaryResult:
        # The model's max_tokens counts real tokens; re-check against the estimator
        if self.estimator(summary) > max_tokens:
            summary = truncate_to_token_limit(summary, max_tokens, self.estimator)
        return SummaryResult(summary, original_tokens, self.estimator(summary), strategy)

    async def _summarize(self, text: str, passthrough_tokens: int, max_tokens: int) -> SummaryResult:
        original_tokens = self.estimator(text)
        if original_tokens <= passthrough_tokens:
            return SummaryResult(text, original_tokens, original_tokens, "passthrough")

        logger.info("Summarizing long input: %s tokens", f"{original_tokens:,}")
        try:
            if original_tokens > self.two_stage_threshold:
                summary = await self._two_stage(text, max_tokens)
                strategy = "two_stage"
            else:
                summary = await self._condense(text, max_tokens)
                strategy = "single_pass"
        except Exception:
            logger.warning("Summarization failed, using truncation fallback", exc_info=True)
            truncated = truncate_to_token_limit(text, max_tokens, self.estimator)
            return SummaryResult(truncated, original_tokens, self.estimator(truncated), "truncated")

        result = self._bounded(summary, original_tokens, max_tokens, strategy)
        logger.info("Summarized: %s -> %s tokens", f"{original_tokens:,}", f"{result.summary_tokens:,}")
        return result

    async def summarize(self, text: str, max_output_tokens: Optional[int] = None) -> SummaryResult:
        """Condense a chat message or query-sized input.

        Inputs at or under the threshold pass through; longer ones are condensed to
        at most ``max_output_tokens`` (default 2000) estimated tokens.
        """
        return await self._summarize(text or "", self.threshold, max_output_tokens or self.max_output_tokens)

    async def summarize_document(self, text: str, max_tokens: Optional[int] = None) -> SummaryResult:
        """Condense a whole document; passes through anything already within ``max_tokens``."""
        max_tokens = max_tokens or settings.DOCUMENT_SUMMARY_MAX_TOKENS
        return await self._summarize(text or "", max_tokens, max_tokens)
