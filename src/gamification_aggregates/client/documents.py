from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .errors import BackendResponseError, DocumentNotFoundError
from .executor import normalize_rows
from .http import BaseHttpClient

logger = logging.getLogger(__name__)

Document = dict[str, Any]


def collection_path(collection: str) -> str:
    return f"/v3/database/{collection}"


def _key_query(key: str) -> dict[str, str]:
    escaped = key.replace("'", "\\'")
    return {"q": f"_id:'{escaped}'"}


@dataclass
class DocumentStore:
    """Key-value access to backend collections, keyed by `_id`."""

    http: BaseHttpClient

    async def get(self, collection: str, key: str) -> Document | None:
        payload = await self.http.get_json_value(collection_path(collection), params=_key_query(key))
        rows = normalize_rows(payload, collection=collection)
        for row in rows:
            if row.get("_id") == key:
                return row
        return rows[0] if rows else None

    async def require(self, collection: str, key: str) -> Document:
        document = await self.get(collection, key)
        if document is None:
            raise DocumentNotFoundError(collection, key)
        return document

    async def put(self, collection: str, document: Mapping[str, Any]) -> Document:
        """Upsert `document`; it must carry its own `_id`."""
        if not document.get("_id"):
            raise ValueError("document must have a non-empty _id")

        payload = await self.http.request_json_value(
            "PUT", collection_path(collection), json=dict(document)
        )
        if payload is None:
            return dict(document)
        if not isinstance(payload, dict):
            raise BackendResponseError(f"Expected JSON object from PUT, got {type(payload)}")
        return payload

    async def delete(self, collection: str, key: str) -> None:
        await self.http.request("DELETE", collection_path(collection), params=_key_query(key))
        logger.debug("Deleted %s from %s", key, collection)
