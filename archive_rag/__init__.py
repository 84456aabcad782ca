"""Retrieval-augmented question answering over a private document archive.

Submodules overview:
- main: FastAPI application with the streaming /chat and blocking /ask endpoints.
- config: Application settings and environment variable loading.
- clients: Process-wide registry of the OpenAI client, vector index and pipeline.
- errors: Typed pipeline errors and provider error classification.
- retry: Shared tenacity retry policy for provider calls.
- text: Markup cleaning, token estimation and overlapping chunking.
- records: Documents, chunks, indexed records and query matches.
- schemas: Pydantic request/response models for API contracts.
- db / models: SQLAlchemy engine and the pgvector table definition.
- vector_index: Index lifecycle, upserts and similarity queries on pgvector.
- embedding: OpenAI embeddings with batching and per-text fallback.
- summarization: Bounded condensation of over-long inputs.
- generation: Grounded prompts and blocking/streaming chat completions.
- pipeline: The query-time orchestrator.
- ingestion: Offline ingestion of documents into the index.
- obs: Observability utilities (tracing/spans).
"""
