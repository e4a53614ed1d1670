"""ChromaDB storage backend.

Talks to a Chroma server over its HTTP API. This module is the only place
that knows Chroma's request/response shapes; everything it returns is a
``MemoryRecord`` or ``SearchResult`` and everything it raises belongs to the
storage error taxonomy:

    transport failure, timeout, 5xx   -> BackendUnavailableError
    4xx, malformed or partial payload -> BackendProtocolError

Similarity search uses Chroma's native vector query by default. With
``native_search=False`` the adapter pulls every candidate and ranks it with
the same cosine routine as the in-process backend, so both backends return
identical orderings for identical data.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from ..exceptions import (
    BackendProtocolError,
    BackendUnavailableError,
    DimensionMismatchError,
    DuplicateHashError,
    RecordLookupError,
)
from ..interfaces import IStorageBackend, MemoryRecord, SearchResult
from ..utils import rank_by_similarity, sort_results

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
METADATA_PREFIX = "metadata_"
_INCLUDE = ["metadatas", "documents", "embeddings"]


class ChromaStorageBackend(IStorageBackend):
    """Chroma-backed storage backend.

    Usage:
        backend = ChromaStorageBackend(
            base_url="http://localhost:8000",
            collection_name="memory_collection",
        )
        await backend.initialize()
    """

    DEFAULT_PAGE_SIZE = 500

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        collection_name: str = "memory_collection",
        native_search: bool = True,
        timeout_seconds: float = 30.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        strict_dimensions: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        self.base_url = base_url.rstrip("/")
        self.collection_name = collection_name
        self.native_search = native_search
        self.timeout_seconds = timeout_seconds
        self.page_size = page_size
        self.strict_dimensions = strict_dimensions
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._collection_id: Optional[str] = None
        self._store_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return (
            f"ChromaStorageBackend(url={self.base_url!r}, "
            f"collection={self.collection_name!r})"
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            kwargs: dict[str, Any] = {
                "base_url": self.base_url,
                "timeout": httpx.Timeout(self.timeout_seconds),
                "headers": {"Content-Type": "application/json"},
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def initialize(self) -> None:
        """Look up the collection, creating it with cosine space if missing."""
        if self._collection_id is not None:
            return

        collections = await self._request("GET", f"{API_PREFIX}/collections")
        if not isinstance(collections, list):
            raise BackendProtocolError("Collection listing is not a list")

        for collection in collections:
            if isinstance(collection, dict) and collection.get("name") == self.collection_name:
                self._collection_id = str(collection.get("id") or self.collection_name)
                logger.info("Using Chroma collection %s", self.collection_name)
                return

        created = await self._request("POST", f"{API_PREFIX}/collections", {
            "name": self.collection_name,
            "metadata": {"hnsw:space": "cosine"},
        })
        if not isinstance(created, dict):
            raise BackendProtocolError("Collection creation returned no collection")
        self._collection_id = str(created.get("id") or self.collection_name)
        logger.info("Created Chroma collection %s", self.collection_name)

    def _collection_path(self, action: str) -> str:
        return f"{API_PREFIX}/collections/{self._collection_id}/{action}"

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=payload)
        except httpx.TimeoutException as e:
            raise BackendUnavailableError(f"Chroma request timed out: {method} {path}") from e
        except httpx.RequestError as e:
            raise BackendUnavailableError(f"Chroma unreachable at {self.base_url}: {e}") from e

        if response.status_code >= 500:
            raise BackendUnavailableError(
                f"Chroma error ({response.status_code}) on {method} {path}: {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise BackendProtocolError(
                f"Chroma rejected {method} {path} ({response.status_code}): {response.text[:200]}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise BackendProtocolError(f"Malformed JSON from Chroma on {method} {path}") from e

    async def store(self, record: MemoryRecord) -> None:
        await self.initialize()
        if record.embedding is None:
            raise BackendProtocolError("Cannot store a record without an embedding")

        async with self._store_lock:
            if await self._exists(record.content_hash):
                raise DuplicateHashError(record.content_hash)

            await self._request("POST", self._collection_path("add"), {
                "ids": [record.content_hash],
                "embeddings": [list(record.embedding)],
                "metadatas": [self._format_metadata(record)],
                "documents": [record.content],
            })
        logger.debug("Stored memory %s in Chroma", record.content_hash[:12])

    async def _exists(self, content_hash: str) -> bool:
        result = await self._request("POST", self._collection_path("get"), {
            "ids": [content_hash],
            "include": [],
        })
        ids = result.get("ids") if isinstance(result, dict) else None
        if not isinstance(ids, list):
            raise BackendProtocolError("Chroma get response is missing 'ids'")
        return len(ids) > 0

    async def get_by_hash(self, content_hash: str) -> Optional[MemoryRecord]:
        await self.initialize()
        result = await self._request("POST", self._collection_path("get"), {
            "ids": [content_hash],
            "include": _INCLUDE,
        })
        records = self._parse_get_response(result)
        if not records:
            return None
        if len(records) > 1 or records[0].content_hash != content_hash:
            raise RecordLookupError(
                f"Chroma returned {len(records)} record(s) not matching hash {content_hash[:12]}"
            )
        return records[0]

    async def delete_by_hash(self, content_hash: str) -> bool:
        await self.initialize()
        async with self._store_lock:
            if not await self._exists(content_hash):
                return False
            await self._request("POST", self._collection_path("delete"), {
                "ids": [content_hash],
            })
        return True

    async def record_count(self) -> int:
        await self.initialize()
        count = await self._request("GET", self._collection_path("count"))
        if isinstance(count, bool) or not isinstance(count, int):
            raise BackendProtocolError(f"Chroma count is not an integer: {count!r}")
        return count

    async def _fetch_all(self) -> list[MemoryRecord]:
        """Fetch every record, page by page.

        Raises:
            BackendProtocolError: If fewer records arrive than the collection
                reports, so no caller ever works on a partial candidate set.
        """
        expected = await self.record_count()
        records: list[MemoryRecord] = []
        offset = 0
        while offset < expected:
            result = await self._request("POST", self._collection_path("get"), {
                "limit": self.page_size,
                "offset": offset,
                "include": _INCLUDE,
            })
            page = self._parse_get_response(result)
            if not page:
                break
            records.extend(page)
            offset += len(page)

        if len(records) < expected:
            raise BackendProtocolError(
                f"Incomplete candidate set from Chroma: got {len(records)} of {expected}"
            )
        return records

    async def search_by_tag(self, tags: set[str], match_all: bool = False) -> list[MemoryRecord]:
        # Tags are stored as a JSON string, so filtering happens here rather
        # than in a Chroma where-clause.
        await self.initialize()
        if not tags:
            return []
        records = await self._fetch_all()
        return [r for r in records if r.has_tags(tags, match_all=match_all)]

    async def similarity_search(self, query_vector: list[float], top_k: int) -> list[SearchResult]:
        await self.initialize()
        if top_k <= 0:
            return []

        if not self.native_search:
            records = await self._fetch_all()
            try:
                return rank_by_similarity(
                    query_vector, records, top_k,
                    strict_dimensions=self.strict_dimensions,
                )
            except DimensionMismatchError as e:
                raise BackendProtocolError(str(e)) from e

        result = await self._request("POST", self._collection_path("query"), {
            "query_embeddings": [list(query_vector)],
            "n_results": top_k,
            "include": _INCLUDE + ["distances"],
        })
        return self._parse_query_response(result, len(query_vector))[:top_k]

    def _format_metadata(self, record: MemoryRecord) -> dict[str, Any]:
        """Flatten a record into Chroma's scalar-only metadata."""
        metadata: dict[str, Any] = {
            "content_hash": record.content_hash,
            "created_at": record.created_at.timestamp(),
            "timestamp_seconds": int(record.created_at.timestamp()),
            "tags": json.dumps(list(record.tags)),
        }
        if record.memory_type is not None:
            metadata["memory_type"] = record.memory_type
        for key, value in record.metadata.items():
            metadata[f"{METADATA_PREFIX}{key}"] = value
        return metadata

    def _parse_record(
        self,
        record_id: Any,
        document: Any,
        metadata: Any,
        embedding: Any,
    ) -> MemoryRecord:
        if not isinstance(record_id, str) or not isinstance(document, str):
            raise BackendProtocolError("Chroma record is missing id or document")
        if not isinstance(metadata, dict):
            raise BackendProtocolError(f"Chroma record {record_id[:12]} has no metadata")

        try:
            tags = json.loads(metadata.get("tags", "[]"))
        except (TypeError, ValueError) as e:
            raise BackendProtocolError(f"Malformed tags on record {record_id[:12]}") from e
        if not isinstance(tags, list):
            raise BackendProtocolError(f"Malformed tags on record {record_id[:12]}")

        created = metadata.get("created_at", metadata.get("timestamp_seconds"))
        if not isinstance(created, (int, float)) or isinstance(created, bool):
            raise BackendProtocolError(f"Missing timestamp on record {record_id[:12]}")

        vector = None
        if embedding is not None:
            if not isinstance(embedding, list):
                raise BackendProtocolError(f"Malformed embedding on record {record_id[:12]}")
            try:
                vector = tuple(float(x) for x in embedding)
            except (TypeError, ValueError) as e:
                raise BackendProtocolError(f"Malformed embedding on record {record_id[:12]}") from e

        user_metadata = {
            key[len(METADATA_PREFIX):]: str(value)
            for key, value in metadata.items()
            if key.startswith(METADATA_PREFIX)
        }

        return MemoryRecord(
            content=document,
            content_hash=record_id,
            tags=tuple(str(t) for t in tags),
            memory_type=metadata.get("memory_type"),
            metadata=user_metadata,
            embedding=vector,
            created_at=datetime.fromtimestamp(created, tz=timezone.utc),
        )

    def _parse_get_response(self, result: Any) -> list[MemoryRecord]:
        if not isinstance(result, dict):
            raise BackendProtocolError("Chroma get response is not an object")
        ids = result.get("ids")
        documents = result.get("documents")
        metadatas = result.get("metadatas")
        embeddings = result.get("embeddings")
        if not isinstance(ids, list) or not isinstance(documents, list) or not isinstance(metadatas, list):
            raise BackendProtocolError("Chroma get response is missing ids/documents/metadatas")
        if embeddings is None:
            embeddings = [None] * len(ids)
        if not (len(ids) == len(documents) == len(metadatas) == len(embeddings)):
            raise BackendProtocolError("Chroma get response has mismatched array lengths")

        return [
            self._parse_record(i, d, m, e)
            for i, d, m, e in zip(ids, documents, metadatas, embeddings)
        ]

    def _parse_query_response(self, result: Any, query_dim: int) -> list[SearchResult]:
        if not isinstance(result, dict):
            raise BackendProtocolError("Chroma query response is not an object")

        def first(key: str) -> Any:
            value = result.get(key)
            if not isinstance(value, list) or not value or not isinstance(value[0], list):
                raise BackendProtocolError(f"Chroma query response is missing '{key}'")
            return value[0]

        ids = first("ids")
        documents = first("documents")
        metadatas = first("metadatas")
        distances = first("distances")
        embeddings = first("embeddings") if result.get("embeddings") else [None] * len(ids)
        if not (len(ids) == len(documents) == len(metadatas) == len(distances) == len(embeddings)):
            raise BackendProtocolError("Chroma query response has mismatched array lengths")

        hits = []
        for record_id, document, metadata, distance, embedding in zip(
            ids, documents, metadatas, distances, embeddings
        ):
            if not isinstance(distance, (int, float)):
                raise BackendProtocolError("Chroma query returned a non-numeric distance")
            record = self._parse_record(record_id, document, metadata, embedding)
            if record.embedding is not None and len(record.embedding) != query_dim:
                if self.strict_dimensions:
                    raise BackendProtocolError(str(DimensionMismatchError(query_dim, len(record.embedding))))
                continue
            # Cosine space: distance = 1 - similarity.
            hits.append(SearchResult(record=record, score=1.0 - float(distance)))
        return sort_results(hits)
