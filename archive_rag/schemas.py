"""Pydantic request/response schemas for the API.

Defines the public contracts used by the FastAPI endpoints and the pipeline:
- ChatTurn: One prior message of the conversation.
- ChatRequest: Input payload for the streaming and blocking chat endpoints.
- Citation: Provenance record returned alongside answers.
- RAGResult: Output payload of the non-streaming pipeline.
- StatusResponse: Readiness report for operators.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatTurn(BaseModel):
    """A previous message in the conversation.

    Attributes:
        role: Who wrote the message.
        content: Message text.
    """
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Request body for asking a question to the RAG pipeline.

    Attributes:
        message: The user question to answer.
        conversation_history: Prior turns; only the most recent ones are used.
    """
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., min_length=1, max_length=2000, description="User question")
    conversation_history: List[ChatTurn] = Field(default_factory=list, alias="conversationHistory")


class Citation(BaseModel):
    """A reference to a retrieved chunk that grounded the answer.

    Attributes:
        title: Source document title.
        url: Source document URL.
        relevance: Raw similarity score from the index (0-1 for cosine).
        snippet: Truncated chunk content.
    """
    title: str
    url: str
    relevance: float
    snippet: str


class RAGResult(BaseModel):
    """Response body of the non-streaming pipeline.

    Attributes:
        answer: The generated (or fixed no-information) answer text.
        citations: Citations derived 1:1 from the retrieved chunks.
        retrieved_chunks: Number of chunks retrieved.
        model: Model that produced the answer.
    """
    model_config = ConfigDict(populate_by_name=True)

    answer: str
    citations: List[Citation]
    retrieved_chunks: int = Field(..., alias="retrievedChunks")
    model: str


class StatusResponse(BaseModel):
    """Service readiness: credentials, index state and index statistics."""
    status: Literal["ready", "not_ready"]
    has_openai_key: bool
    index_name: str
    index_status: Literal["ready", "not_created", "provisioning", "error"]
    index_stats: Optional[Dict[str, Any]] = None
