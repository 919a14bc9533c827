"""Qdrant vector store connection and collection management."""

from __future__ import annotations

from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    VectorParams,
    PayloadSchemaType,
)

from .config import AppConfig
from .logger import LOGGER

# Collection vector configuration
VECTOR_SIZE = 768           # text-embedding-004 output dimensionality
VECTOR_DISTANCE = Distance.COSINE

# Payload fields used by scoped retrieval
KEYWORD_INDEXES = ("dataset_id", "source_id")
INTEGER_INDEXES = ("chunk_index",)


def get_qdrant_client(url: str | None = None) -> QdrantClient:
    """Create a Qdrant client from config or explicit URL."""
    target_url = url or AppConfig.get().qdrant_url
    client = QdrantClient(url=target_url)
    LOGGER.debug("Qdrant client connected to %s", target_url)
    return client


def ensure_collection(client: QdrantClient, collection_name: str | None = None) -> str:
    """Ensure the chunk collection exists with its payload indexes.

    No-ops if it already exists. Returns the collection name.
    """
    name = collection_name or AppConfig.get().qdrant_collection

    if client.collection_exists(name):
        LOGGER.debug("Qdrant collection '%s' already exists", name)
        return name

    client.create_collection(
        collection_name=name,
        vectors_config=VectorParams(size=VECTOR_SIZE, distance=VECTOR_DISTANCE),
    )
    LOGGER.info("Created Qdrant collection '%s' (%d dims, %s)", name, VECTOR_SIZE, VECTOR_DISTANCE)

    for field_name in KEYWORD_INDEXES:
        client.create_payload_index(
            collection_name=name,
            field_name=field_name,
            field_schema=PayloadSchemaType.KEYWORD,
        )
    for field_name in INTEGER_INDEXES:
        client.create_payload_index(
            collection_name=name,
            field_name=field_name,
            field_schema=PayloadSchemaType.INTEGER,
        )
    LOGGER.info("Created payload indexes on %s", ", ".join(KEYWORD_INDEXES + INTEGER_INDEXES))
    return name


__all__ = ["VECTOR_SIZE", "ensure_collection", "get_qdrant_client"]
