"""
Knowledge backend client - HTTP adapter for the semantic knowledge service.

The service owns text, embeddings and the graph; we only address it by
dataset id and data id. Every payload it returns is normalized here so the
rest of the package never sees raw response shapes.

Endpoints:
- POST   /api/v1/add      multipart upload into a dataset
- PATCH  /api/v1/update   replace an existing data item
- DELETE /api/v1/delete   remove a data item
- POST   /api/v1/search   query one or more datasets
- POST   /api/v1/cognify  build the graph for datasets
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_REQUEST_TIMEOUT = 60.0
SEARCH_TYPES = ("GRAPH_COMPLETION", "CHUNKS", "SUMMARIES")
UPLOAD_FILENAME = "agent-memory.txt"

MAX_UNWRAP_DEPTH = 4


class KnowledgeHttpError(Exception):
    """Non-2xx response from the knowledge backend."""

    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


@dataclass
class SearchResult:
    id: str
    text: str
    score: float
    metadata: dict = field(default_factory=dict)


@dataclass
class AddResult:
    dataset_id: str
    dataset_name: str
    data_id: Optional[str] = None


# ============== PAYLOAD NORMALIZATION ==============

def normalize_search_results(data, depth: int = 0) -> list[SearchResult]:
    """
    Turn any search payload into SearchResults.

    The service answers with a bare list of strings for completion searches,
    a list of objects for chunk searches, and sometimes wraps either in
    {"results": [...]}. Anything else is no results.
    """
    if isinstance(data, list):
        results = []
        for i, item in enumerate(data):
            if isinstance(item, str):
                results.append(SearchResult(id=f"result-{i}", text=item, score=1.0))
            elif isinstance(item, dict):
                item_id = item.get("id")
                text = item.get("text")
                score = item.get("score")
                metadata = item.get("metadata")
                results.append(SearchResult(
                    id=item_id if isinstance(item_id, str) else f"result-{i}",
                    text=text if isinstance(text, str) else json.dumps(item, default=str),
                    score=float(score) if isinstance(score, (int, float)) and not isinstance(score, bool) else 1.0,
                    metadata=metadata if isinstance(metadata, dict) else {},
                ))
            elif item is not None:
                results.append(SearchResult(id=f"result-{i}", text=str(item), score=1.0))
        return results

    if depth < MAX_UNWRAP_DEPTH and isinstance(data, dict) and "results" in data:
        return normalize_search_results(data["results"], depth + 1)

    return []


def extract_data_id(value, depth: int = 0) -> Optional[str]:
    """Find the data id in an add/update response, however it is nested."""
    if not value or depth > MAX_UNWRAP_DEPTH:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        for item in value:
            data_id = extract_data_id(item, depth + 1)
            if data_id:
                return data_id
        return None
    if isinstance(value, dict):
        if isinstance(value.get("data_id"), str):
            return value["data_id"]
        return extract_data_id(value.get("data_ingestion_info"), depth + 1)
    return None


def _add_result(data) -> AddResult:
    if not isinstance(data, dict):
        data = {}
    data_id = data.get("data_id")
    if data_id is None:
        data_id = data.get("data_ingestion_info")
    return AddResult(
        dataset_id=str(data.get("dataset_id") or ""),
        dataset_name=str(data.get("dataset_name") or ""),
        data_id=extract_data_id(data_id),
    )


# ============== CLIENT ==============

class KnowledgeClient:
    """Async client for the knowledge backend."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL,
                 api_key: str = "",
                 timeout: float = DEFAULT_REQUEST_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, method: str, path: str, timeout: Optional[float] = None, **kwargs):
        response = await self.client.request(
            method, path, timeout=timeout or self.timeout, **kwargs
        )
        if not response.is_success:
            raise KnowledgeHttpError(
                f"Knowledge backend request failed ({response.status_code}): {response.text}",
                response.status_code,
            )
        if not response.content:
            return {}
        return response.json()

    async def add(self, data: str, dataset_name: str,
                  dataset_id: Optional[str] = None) -> AddResult:
        """Upload text into a dataset (created on first write)."""
        form = {"datasetName": dataset_name}
        if dataset_id:
            form["datasetId"] = dataset_id
        files = {"data": (UPLOAD_FILENAME, data.encode("utf-8"), "text/plain")}

        payload = await self._request("POST", "/api/v1/add", data=form, files=files)
        return _add_result(payload)

    async def update(self, data_id: str, dataset_id: str, data: str) -> AddResult:
        """Replace an existing data item's text."""
        files = {"data": (UPLOAD_FILENAME, data.encode("utf-8"), "text/plain")}
        payload = await self._request(
            "PATCH", "/api/v1/update",
            params={"data_id": data_id, "dataset_id": dataset_id},
            files=files,
        )
        return _add_result(payload)

    async def delete(self, data_id: str, dataset_id: str):
        await self._request(
            "DELETE", "/api/v1/delete",
            params={"data_id": data_id, "dataset_id": dataset_id},
        )

    async def search(self, query_text: str, search_type: str,
                     dataset_ids: list[str], top_k: int,
                     timeout: Optional[float] = None) -> list[SearchResult]:
        payload = await self._request(
            "POST", "/api/v1/search",
            timeout=timeout,
            json={
                "query": query_text,
                "searchType": search_type,
                "datasetIds": dataset_ids,
                "topK": top_k,
            },
        )
        return normalize_search_results(payload)

    async def cognify(self, dataset_ids: Optional[list[str]] = None) -> dict:
        """Kick off graph building. The service does the work asynchronously."""
        payload = await self._request("POST", "/api/v1/cognify", json={"datasetIds": dataset_ids})
        return payload if isinstance(payload, dict) else {}

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
