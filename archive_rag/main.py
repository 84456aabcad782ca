"""FastAPI application entrypoint and routes.

Exposes health/status probes plus the streaming /chat and blocking /ask endpoints,
configures CORS, and maps pipeline errors to safe HTTP responses. Full error detail
is logged; end users only see provider text outside production.
"""
import json
import logging
from typing import AsyncIterator, Dict, List
from urllib.parse import quote

import openai
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError

from archive_rag.clients import aclose_clients, get_pipeline, get_vector_index
from archive_rag.config import settings
from archive_rag.errors import (
    ConfigurationError,
    EmptyInputError,
    GenerationError,
    IndexNotReadyError,
    InvalidRequestError,
    RAGError,
)
from archive_rag.obs import Trace
from archive_rag.pipeline import AnswerStream, RAGPipeline
from archive_rag.schemas import ChatRequest, RAGResult, StatusResponse
from archive_rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong while answering. Please try again."
STREAM_INTERRUPTED = "\n\n[The answer was interrupted. Please try again.]"

app = FastAPI(title="Archive RAG API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_credentials=True,
    allow_headers=["*"],
    expose_headers=["X-Citations"],
)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    """Release the OpenAI connection pool and database engine."""
    await aclose_clients()


def _public_error(exc: RAGError) -> Dict[str, str]:
    """User-facing message for a pipeline error; raw detail only outside production."""
    if isinstance(exc, IndexNotReadyError):
        message = "The archive index is not available yet. Ask an operator to run ingestion."
    elif isinstance(exc, ConfigurationError):
        message = "The AI service is not configured. Please contact support."
    elif isinstance(exc, (InvalidRequestError, EmptyInputError)):
        message = "The request could not be processed. Please rephrase your question."
    elif exc.http_status == 503:
        message = "The AI service is temporarily unavailable. Please try again."
    else:
        message = GENERIC_ERROR
    body = {"error": message, "stage": exc.stage}
    if not settings.is_production:
        body["detail"] = exc.message
    return body


@app.exception_handler(RAGError)
async def rag_error_handler(request: Request, exc: RAGError) -> JSONResponse:
    status_code = exc.http_status
    if isinstance(exc.__cause__, openai.RateLimitError):
        status_code = 429
    if isinstance(exc, ConfigurationError):
        logger.error("%s: missing or rejected setting %s", request.url.path, exc.setting)
    else:
        logger.error("%s failed at stage %s: %s", request.url.path, exc.stage, exc.message, exc_info=exc)
    return JSONResponse(status_code=status_code, content=_public_error(exc))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": GENERIC_ERROR})


@app.get("/health")
def health():
    """Liveness probe endpoint.

    Returns:
        dict: {"status": "ok"} when the service is running.
    """
    return {"status": "ok"}


@app.get("/status", response_model=StatusResponse)
async def status(index: VectorIndex = Depends(get_vector_index)) -> StatusResponse:
    """Readiness report: credentials present, index provisioned, record counts."""
    index_stats = None
    try:
        if not await index.exists():
            index_status = "not_created"
        elif not await index.is_ready():
            index_status = "provisioning"
        else:
            index_status = "ready"
            index_stats = (await index.stats()).as_dict()
    except (SQLAlchemyError, RAGError):
        logger.exception("Index status check failed for %s", index.name)
        index_status = "error"

    has_key = bool(settings.OPENAI_API_KEY)
    return StatusResponse(
        status="ready" if has_key and index_status == "ready" else "not_ready",
        has_openai_key=has_key,
        index_name=index.name,
        index_status=index_status,
        index_stats=index_stats,
    )


async def _relay(answer: AnswerStream, trace: Trace, question: str) -> AsyncIterator[str]:
    parts: List[str] = []
    try:
        async for fragment in answer:
            parts.append(fragment)
            yield fragment
    except GenerationError:
        logger.exception("Answer stream failed after %d fragments", len(parts))
        trace.event("stream_error", {"fragments": len(parts)})
        yield STREAM_INTERRUPTED
    finally:
        # Runs on client disconnect too, aborting the upstream model stream
        await answer.aclose()
        trace.generation("answer", prompt=question, output="".join(parts), model=answer.model)
        trace.end(output={"retrieved_chunks": answer.retrieved_chunks, "chars": sum(map(len, parts))})


@app.post("/chat")
async def chat(req: ChatRequest, pipeline: RAGPipeline = Depends(get_pipeline)) -> StreamingResponse:
    """Stream a grounded answer.

    Citations are sent up front as URL-encoded JSON in the ``X-Citations`` header;
    the body is the answer text, relayed fragment by fragment.
    """
    trace = Trace("chat", input={"message": req.message, "history": len(req.conversation_history)})
    answer = await pipeline.stream(req.message, history=req.conversation_history)
    trace.event(
        "retrieval_result",
        {
            "retrieved_chunks": answer.retrieved_chunks,
            "top_score": answer.citations[0].relevance if answer.citations else 0.0,
        },
    )
    citations = json.dumps([c.model_dump() for c in answer.citations])
    return StreamingResponse(
        _relay(answer, trace, req.message),
        media_type="text/plain; charset=utf-8",
        headers={
            "X-Citations": quote(citations),
            "Cache-Control": "no-cache, no-transform",
        },
    )


@app.post("/ask", response_model=RAGResult)
async def ask(req: ChatRequest, pipeline: RAGPipeline = Depends(get_pipeline)) -> RAGResult:
    """Answer in one response: {answer, citations, retrievedChunks, model}."""
    trace = Trace("ask", input={"message": req.message})
    result = await pipeline.answer(req.message, history=req.conversation_history)
    trace.event("retrieval_result", {"retrieved_chunks": result.retrieved_chunks})
    if result.retrieved_chunks:
        trace.generation("answer", prompt=req.message, output=result.answer, model=result.model)
    trace.end(output={"retrieved_chunks": result.retrieved_chunks})
    return result
