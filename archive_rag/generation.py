"""Answer generation utilities using OpenAI chat completions.

Provides:
- build_system_prompt: Instruction scoping the assistant to the retrieved context
- build_user_prompt: Formatting of retrieved chunks plus the literal user query
- build_messages: System turn, bounded history, then the context+query turn
- AnswerGenerator: Blocking and streaming completions with retry on connect
- FragmentStream: Async iterator over streamed text that owns the connection

Defaults are read from archive_rag.config.settings.
"""
import logging
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from openai import AsyncOpenAI

from archive_rag.config import settings
from archive_rag.errors import PROVIDER_ERRORS, GenerationError, rejection_for
from archive_rag.records import Match
from archive_rag.retry import provider_retrying
from archive_rag.schemas import ChatTurn

logger = logging.getLogger(__name__)

Message = Dict[str, str]


def build_system_prompt() -> str:
    """Instruction that limits the assistant's authority to the provided context."""
    return (
        "You are a private research assistant for a document archive.\n\n"
        "RULES:\n"
        "1. Base ALL responses on the provided context - never make up information.\n"
        "2. If the context does not contain relevant information, say \"I don't have information "
        "about that in the archive\". If it only partly answers the question, say what is missing.\n"
        "3. Cite the specific titles of the sources you use.\n"
        "4. Use markdown formatting: bold titles, bullet points, numbered lists.\n"
        "5. Keep the tone professional, helpful, and concise.\n"
        "6. When several sources cover a topic, list the most relevant ones.\n\n"
        "FORMAT:\n"
        "- Start with a direct answer to the question.\n"
        "- Keep paragraphs short and scannable.\n\n"
        "Your knowledge is LIMITED to the provided context. If you are not confident the answer "
        "is in the context, say so."
    )


def build_user_prompt(query: str, matches: Sequence[Match]) -> str:
    """Numbered context blocks (title, url, relevance, content) followed by the query.

    Args:
        query: The user's literal question.
        matches: Retrieved chunks in rank order.

    Returns:
        str: The final user-turn message.
    """
    sections: List[str] = []
    for i, m in enumerate(matches, start=1):
        sections.append(
            f"[{i}] Title: \"{m.metadata.title}\"\n"
            f"URL: {m.metadata.url}\n"
            f"Relevance: {m.score * 100:.1f}%\n\n"
            f"Content:\n{m.metadata.content}"
        )
    context = "\n\n---\n\n".join(sections)
    return (
        f"CONTEXT FROM THE ARCHIVE:\n\n{context}\n\n---\n\n"
        f"USER QUERY: {query}\n\n"
        "Answer using ONLY the context above. Include specific source titles and format your "
        "response with markdown."
    )


def build_messages(
    query: str,
    matches: Sequence[Match],
    history: Optional[Sequence[ChatTurn]] = None,
    max_turns: Optional[int] = None,
) -> List[Message]:
    """Assemble chat messages: system, last ``max_turns`` history turns, context+query."""
    max_turns = settings.HISTORY_MAX_TURNS if max_turns is None else max_turns
    recent = list(history or [])[-max_turns:] if max_turns > 0 else []
    messages: List[Message] = [{"role": "system", "content": build_system_prompt()}]
    messages.extend({"role": t.role, "content": t.content} for t in recent)
    messages.append({"role": "user", "content": build_user_prompt(query, matches)})
    return messages


class AnswerGenerator:
    """Grounded answer generation against an OpenAI chat model.

    Opening a completion is retried on transient failures; once tokens are flowing
    the stream is relayed as-is and a mid-stream failure surfaces as GenerationError.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff: Optional[float] = None,
    ):
        self.client = client
        self.model = model or settings.OPENAI_MODEL
        self.temperature = settings.TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.MAX_OUTPUT_TOKENS
        self.max_retries = settings.PROVIDER_MAX_RETRIES if max_retries is None else max_retries
        self.backoff = settings.RETRY_BACKOFF_SECONDS if backoff is None else backoff

    async def _create(self, messages: List[Message], stream: bool, temperature: Optional[float], max_tokens: Optional[int]):
        try:
            async for attempt in provider_retrying(self.max_retries, self.backoff):
                with attempt:
                    return await self.client.chat.completions.create(
                        model=self.model,
                        messages=messages,
                        temperature=self.temperature if temperature is None else temperature,
                        max_tokens=max_tokens or self.max_tokens,
                        stream=stream,
                    )
        except PROVIDER_ERRORS as exc:
            rejection = rejection_for(exc, "generation")
            if rejection is not None:
                raise rejection from exc
            raise GenerationError(f"Failed to generate response: {exc}") from exc

    async def complete(
        self,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Tuple[str, str]:
        """Blocking completion.

        Returns:
            Tuple[str, str]: (answer text, model reported by the provider).
        """
        resp = await self._create(messages, False, temperature, max_tokens)
        content = resp.choices[0].message.content if resp.choices else None
        return (content or "No response generated.").strip(), resp.model or self.model

    async def stream(
        self,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> "FragmentStream":
        """Open a streaming completion and return an iterator over text fragments.

        The upstream connection is closed when the iterator finishes, fails, or is
        closed early by the caller (``aclose()``, task cancellation).
        """
        upstream = await self._create(messages, True, temperature, max_tokens)
        return FragmentStream(upstream)


class FragmentStream:
    """Text fragments of a streaming completion; owns the upstream connection.

    ``aclose()`` releases the connection even if iteration never started.
    """

    def __init__(self, upstream):
        self._upstream = upstream
        self._fragments = self._relay()

    def __aiter__(self) -> "FragmentStream":
        return self

    async def __anext__(self) -> str:
        return await self._fragments.__anext__()

    async def aclose(self) -> None:
        await self._fragments.aclose()
        await self._upstream.close()

    async def _relay(self) -> AsyncIterator[str]:
        upstream = self._upstream
        try:
            async for chunk in upstream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except PROVIDER_ERRORS as exc:
            logger.error("Answer stream failed mid-way: %s", exc)
            raise GenerationError(f"Answer stream interrupted: {exc}") from exc
        finally:
            await upstream.close()
