"""Ingestion package for offline pipelines.

Contains the document ingestor that cleans, chunks, embeds and upserts archive
content into the vector index. See ingest_documents.py.
"""
