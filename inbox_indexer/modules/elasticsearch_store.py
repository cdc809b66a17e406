"""
Elasticsearch Store Module
Idempotent-by-id document store over the Elasticsearch REST API

PATTERN RECOGNITION: This is an Adapter around requests, exposing the small
write contract the indexer needs (upsert, bulk upsert, update, delete,
exists, count, aggregates). Every write can wait until the change is visible
to search (refresh=wait_for).
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import quote

import requests

from ..utils.config import StoreConfig
from .errors import StoreError
from .models import SearchQuery


logger = logging.getLogger(__name__)


INDEX_MAPPING = {
    "mappings": {
        "properties": {
            "id": {"type": "keyword"},
            "account_id": {"type": "keyword"},
            "folder": {"type": "keyword"},
            "subject": {"type": "text"},
            "body": {"type": "text"},
            "sender": {"type": "text"},
            "recipients": {"type": "keyword"},
            "cc": {"type": "keyword"},
            "date": {"type": "date"},
            "category": {"type": "keyword"},
            "indexed_at": {"type": "date"},
            "has_attachments": {"type": "boolean"},
            "flags": {"type": "keyword"},
        }
    }
}


class BulkStore(Protocol):
    """
    Write contract the indexer depends on.

    Bulk calls return one entry per input item, in input order: None when the
    item was applied, otherwise the store's error detail. A failure of the
    call as a whole raises instead.
    """

    async def ensure_index(self) -> None: ...

    async def upsert(self, doc_id: str, source: Dict[str, Any],
                     wait_for_visible: bool = False) -> None: ...

    async def bulk_upsert(self, items: List[Tuple[str, Dict[str, Any]]],
                          wait_for_visible: bool = False) -> List[Optional[Any]]: ...

    async def update(self, doc_id: str, fields: Dict[str, Any],
                     wait_for_visible: bool = False) -> None: ...

    async def delete(self, doc_id: str, wait_for_visible: bool = False) -> None: ...

    async def bulk_delete(self, doc_ids: List[str],
                          wait_for_visible: bool = False) -> List[Optional[Any]]: ...

    async def exists(self, doc_id: str) -> bool: ...

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]: ...

    async def count(self) -> int: ...

    async def size_in_bytes(self) -> int: ...

    async def category_counts(self, size: int = 10) -> Dict[str, int]: ...

    async def search(self, query: SearchQuery) -> Tuple[int, List[Dict[str, Any]]]: ...

    async def close(self) -> None: ...


class ElasticsearchStore:
    """Elasticsearch implementation of BulkStore"""

    def __init__(self, config: StoreConfig, session: Optional[requests.Session] = None):
        """
        Args:
            config: Store configuration (URL, index, credentials)
            session: Optional pre-built requests session (used by tests)
        """
        self.config = config
        self.index = config.index
        self.base_url = config.url.rstrip("/")
        self.session = session or requests.Session()
        if config.username and config.password:
            self.session.auth = (config.username, config.password)
        self.session.verify = config.verify_certs
        self.logger = logging.getLogger("ElasticsearchStore")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request_sync(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        allow_404: bool = False,
    ) -> requests.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                data=data,
                headers=headers,
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            raise StoreError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 404 and allow_404:
            return response

        if response.status_code >= 400:
            raise StoreError(
                f"{method} {path} returned {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        return response

    async def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        return await asyncio.to_thread(self._request_sync, method, path, **kwargs)

    @staticmethod
    def _refresh_params(wait_for_visible: bool) -> Dict[str, str]:
        return {"refresh": "wait_for"} if wait_for_visible else {}

    def _doc_path(self, doc_id: str) -> str:
        return f"{self.index}/_doc/{quote(doc_id, safe='')}"

    # ------------------------------------------------------------------
    # Index management
    # ------------------------------------------------------------------

    async def ensure_index(self) -> None:
        """Create the index with its mapping if it does not exist"""
        response = await self._request("HEAD", self.index, allow_404=True)
        if response.status_code != 404:
            self.logger.debug(f"Index {self.index} already exists")
            return

        await self._request("PUT", self.index, json_body=INDEX_MAPPING)
        self.logger.info(f"Created Elasticsearch index {self.index}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, doc_id: str, source: Dict[str, Any],
                     wait_for_visible: bool = False) -> None:
        await self._request(
            "PUT",
            self._doc_path(doc_id),
            params=self._refresh_params(wait_for_visible),
            json_body=source,
        )

    async def bulk_upsert(self, items: List[Tuple[str, Dict[str, Any]]],
                          wait_for_visible: bool = False) -> List[Optional[Any]]:
        """
        Upsert many documents in one _bulk call.

        Returns:
            One entry per item in input order: None on success, otherwise the
            error object Elasticsearch reported for that item.
        """
        if not items:
            return []

        lines = []
        for doc_id, source in items:
            lines.append(json.dumps({"index": {"_index": self.index, "_id": doc_id}}))
            lines.append(json.dumps(source, default=str))
        return await self._bulk(lines, len(items), "index", wait_for_visible)

    async def update(self, doc_id: str, fields: Dict[str, Any],
                     wait_for_visible: bool = False) -> None:
        await self._request(
            "POST",
            f"{self.index}/_update/{quote(doc_id, safe='')}",
            params=self._refresh_params(wait_for_visible),
            json_body={"doc": fields},
        )

    async def delete(self, doc_id: str, wait_for_visible: bool = False) -> None:
        # Deleting an id that is already gone leaves the same final state
        await self._request(
            "DELETE",
            self._doc_path(doc_id),
            params=self._refresh_params(wait_for_visible),
            allow_404=True,
        )

    async def bulk_delete(self, doc_ids: List[str],
                          wait_for_visible: bool = False) -> List[Optional[Any]]:
        if not doc_ids:
            return []

        lines = [
            json.dumps({"delete": {"_index": self.index, "_id": doc_id}})
            for doc_id in doc_ids
        ]
        return await self._bulk(lines, len(doc_ids), "delete", wait_for_visible)

    async def _bulk(self, lines: List[str], expected: int, action: str,
                    wait_for_visible: bool) -> List[Optional[Any]]:
        payload = "\n".join(lines) + "\n"
        response = await self._request(
            "POST",
            "_bulk",
            params=self._refresh_params(wait_for_visible),
            data=payload,
            headers={"Content-Type": "application/x-ndjson"},
        )

        body = response.json()
        items = body.get("items") or []
        if len(items) != expected:
            raise StoreError(
                f"Bulk response carried {len(items)} items for {expected} requests"
            )

        outcomes: List[Optional[Any]] = []
        for item in items:
            result = item.get(action) or next(iter(item.values()), {})
            outcomes.append(result.get("error"))
        return outcomes

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def exists(self, doc_id: str) -> bool:
        response = await self._request("HEAD", self._doc_path(doc_id), allow_404=True)
        return response.status_code != 404

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", self._doc_path(doc_id), allow_404=True)
        if response.status_code == 404:
            return None
        return response.json().get("_source")

    async def count(self) -> int:
        response = await self._request("GET", f"{self.index}/_count")
        return int(response.json().get("count", 0))

    async def size_in_bytes(self) -> int:
        response = await self._request("GET", f"{self.index}/_stats/store")
        indices = response.json().get("indices", {})
        primaries = indices.get(self.index, {}).get("primaries", {})
        return int(primaries.get("store", {}).get("size_in_bytes", 0))

    async def category_counts(self, size: int = 10) -> Dict[str, int]:
        response = await self._request(
            "POST",
            f"{self.index}/_search",
            json_body={
                "size": 0,
                "aggs": {"categories": {"terms": {"field": "category", "size": size}}},
            },
        )
        buckets = (
            response.json().get("aggregations", {}).get("categories", {}).get("buckets", [])
        )
        return {bucket["key"]: bucket["doc_count"] for bucket in buckets}

    async def search(self, query: SearchQuery) -> Tuple[int, List[Dict[str, Any]]]:
        must: List[Dict[str, Any]] = []
        filters: List[Dict[str, Any]] = []

        if query.query:
            must.append({
                "multi_match": {
                    "query": query.query,
                    "fields": ["subject^2", "body", "sender"],
                }
            })
        if query.account_id:
            filters.append({"term": {"account_id": query.account_id}})
        if query.folder:
            filters.append({"term": {"folder": query.folder}})
        if query.category:
            filters.append({"term": {"category": query.category}})

        response = await self._request(
            "POST",
            f"{self.index}/_search",
            json_body={
                "from": query.offset,
                "size": query.size,
                "query": {
                    "bool": {
                        "must": must or [{"match_all": {}}],
                        "filter": filters,
                    }
                },
                "sort": [{"date": {"order": "desc"}}],
            },
        )
        hits = response.json().get("hits", {})
        total = hits.get("total", 0)
        if isinstance(total, dict):
            total = total.get("value", 0)
        return int(total), [hit["_source"] for hit in hits.get("hits", [])]

    async def close(self) -> None:
        self.session.close()
