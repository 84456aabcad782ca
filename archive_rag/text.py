"""Text helpers for markup cleaning, token estimation, and overlapping chunking.

This module provides:
- clean_html: markup to plain text using BeautifulSoup
- estimate_tokens: character-based token estimate shared by chunking and summarization
- split_into_sentences: conservative sentence boundary splitting
- chunk_text: sentence-aware chunking with token overlap
- chunk_by_words: word-window fallback for oversized sentences
- stable_doc_id: stable SHA-1 based identifier for documents without an id
"""
import hashlib
import math
import re
from typing import Callable, List

from bs4 import BeautifulSoup
from bs4.element import Comment

# Pluggable token counter; any callable str -> int can replace estimate_tokens.
TokenEstimator = Callable[[str], int]

CHARS_PER_TOKEN = 3.5
WORDS_PER_TOKEN = 0.75

BLOCK_TAGS = [
    "p", "div", "br", "hr", "li", "ul", "ol", "dl", "dt", "dd",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "table", "tr", "td", "th", "blockquote", "pre",
    "section", "article", "header", "footer", "aside", "nav",
]

# Entities decoded by the parser that are folded back to plain ASCII.
_TYPOGRAPHIC = str.maketrans({
    "\u00a0": " ",
    "\u2018": "'",
    "\u2019": "'",
    "\u201c": '"',
    "\u201d": '"',
    "\u2026": "...",
})

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+(?=[A-Z])")


def stable_doc_id(s: str) -> str:
    """Compute a stable 40-char SHA-1 hex identifier for a string.

    Args:
        s: Input string (e.g., URL or title).

    Returns:
        str: First 40 hex characters of the SHA-1 digest.
    """
    return hashlib.sha1(s.encode("utf-8")).hexdigest()[:40]


def clean_html(html: str) -> str:
    """Convert markup into whitespace-normalized plain text.

    Scripts, styles and comments are dropped along with every tag. Entities are
    decoded by the parser; typographic quotes, ellipses and non-breaking spaces are
    folded to ASCII. Block-level elements are separated by a space so adjacent
    paragraphs do not run together, while inline elements join their neighbours.

    Args:
        html: Raw markup (plain text passes through unchanged apart from whitespace).

    Returns:
        str: Plain text, or "" for empty input.
    """
    if not html:
        return ""
    soup = BeautifulSoup(html, "lxml")

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    for tag in soup.find_all(BLOCK_TAGS):
        tag.insert_before(" ")
        tag.insert_after(" ")

    text = soup.get_text().translate(_TYPOGRAPHIC)
    text = re.sub(r"\s+", " ", text).strip()
    return text


def estimate_tokens(text: str) -> int:
    """Conservatively estimate the token count of English text.

    Uses 3.5 characters per token, which over-counts for typical GPT tokenizers.
    """
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def split_into_sentences(text: str) -> List[str]:
    """Split on . ! ? followed by whitespace and an uppercase letter.

    Abbreviations followed by a lowercase word stay intact; two real sentences
    are occasionally merged when the second starts with a digit or lowercase letter.
    """
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text) if s.strip()]


def chunk_by_words(text: str, max_tokens: int, overlap: int) -> List[str]:
    """Split text into word windows sized from the token budget.

    Each window holds ``max_tokens * 0.75`` words and repeats the last
    ``overlap * 0.75`` words of the previous window.
    """
    words = text.split()
    if not words:
        return []
    max_words = max(1, math.floor(max_tokens * WORDS_PER_TOKEN))
    overlap_words = math.floor(overlap * WORDS_PER_TOKEN)
    step = max(1, max_words - overlap_words)

    chunks: List[str] = []
    for start in range(0, len(words), step):
        chunks.append(" ".join(words[start:start + max_words]))
        if start + max_words >= len(words):
            break
    return chunks


def _overlap_sentences(sentences: List[str], overlap: int, estimator: TokenEstimator) -> List[str]:
    """Trailing sentences whose combined estimate fits within the overlap budget."""
    out: List[str] = []
    tokens = 0
    for sentence in reversed(sentences):
        sentence_tokens = estimator(sentence)
        if tokens + sentence_tokens > overlap:
            break
        out.insert(0, sentence)
        tokens += sentence_tokens
    return out


def chunk_text(
    text: str,
    max_tokens: int = 800,
    overlap: int = 200,
    preserve_sentences: bool = True,
    estimator: TokenEstimator = estimate_tokens,
) -> List[str]:
    """Split text into overlapping chunks no larger than ``max_tokens``.

    Sentences are accumulated greedily. When the next sentence would overflow the
    chunk, the chunk is closed and the next one is seeded with trailing sentences
    of the closed chunk worth at most ``overlap`` tokens. A sentence that alone
    exceeds ``max_tokens`` is split into word windows instead.

    Args:
        text: Normalized plain text.
        max_tokens: Estimated token ceiling per chunk.
        overlap: Estimated tokens repeated between consecutive chunks.
        preserve_sentences: When False, use word windows for the whole text.
        estimator: Token counting strategy.

    Returns:
        List[str]: Ordered, non-empty chunks; [] for blank input.
    """
    if not text or not text.strip():
        return []
    text = text.strip()
    if estimator(text) <= max_tokens:
        return [text]
    if not preserve_sentences:
        return chunk_by_words(text, max_tokens, overlap)

    chunks: List[str] = []
    current: List[str] = []

    for sentence in split_into_sentences(text):
        if estimator(sentence) > max_tokens:
            if current:
                chunks.append(" ".join(current))
                current = []
            chunks.extend(chunk_by_words(sentence, max_tokens, overlap))
            continue

        if current and estimator(" ".join(current + [sentence])) > max_tokens:
            chunks.append(" ".join(current))
            current = _overlap_sentences(current, overlap, estimator)
            # Seeded overlap must not push the new chunk past the ceiling
            while current and estimator(" ".join(current + [sentence])) > max_tokens:
                current.pop(0)

        current.append(sentence)

    if current:
        chunks.append(" ".join(current))
    return [c for c in chunks if c.strip()]
