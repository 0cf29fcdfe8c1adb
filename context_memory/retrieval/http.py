"""HttpRetrievalGateway: JSON-over-HTTP client for an external vector service.

Endpoints (all POST, JSON bodies):

    {endpoint}/search  {"collection", "conversation_id", "query", "top_k"}
                       → {"results": [{"id": "message:42", "score": 0.83}, ...]}
    {endpoint}/index   {"collection", "conversation_id", "id", "text", "type"}
                       → {"vector_ref": "..."}
    {endpoint}/delete  {"collection", "conversation_id", "ids": [...] | null}

The service owns embedding; the engine only ever sends text.
"""

from __future__ import annotations

import logging
import os

import httpx

from ..types import ConfigurationError, RetrievalGatewayError, RetrievalHit, RetrievalTimeoutError

logger = logging.getLogger(__name__)


class HttpRetrievalGateway:
    """Retrieval gateway backed by a remote vector service via httpx."""

    def __init__(
        self,
        endpoint: str,
        api_key: str | None = None,
        api_key_env: str = "VECTOR_STORE_API_KEY",
        collection: str = "conversation-context",
        timeout_ms: int = 2000,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not endpoint:
            raise ConfigurationError("Retrieval endpoint is not configured")
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key or os.environ.get(api_key_env, "")
        self.collection = collection
        self.timeout = timeout_ms / 1000
        self._client = httpx.Client(timeout=self.timeout, transport=transport)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.endpoint}/{path}"
        try:
            response = self._client.post(url, headers=self._headers(), json=payload)
        except httpx.TimeoutException as e:
            raise RetrievalTimeoutError(f"Vector service timed out on /{path}: {e}") from e
        except httpx.HTTPError as e:
            raise RetrievalGatewayError(f"Vector service unreachable on /{path}: {e}") from e

        if response.status_code != 200:
            raise RetrievalGatewayError(
                f"Vector service /{path} returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json() if response.content else {}
        except ValueError as e:
            raise RetrievalGatewayError(f"Vector service /{path} returned invalid JSON") from e

    def search(self, conversation_id: str, query: str, top_k: int) -> list[RetrievalHit]:
        data = self._post("search", {
            "collection": self.collection,
            "conversation_id": conversation_id,
            "query": query,
            "top_k": top_k,
        })
        hits = []
        for item in data.get("results", []):
            item_id = item.get("id")
            if not item_id:
                continue
            hits.append(RetrievalHit(item_id=str(item_id), similarity=float(item.get("score", 0.0))))
        return hits

    def index(self, conversation_id: str, item_id: str, text: str, item_type: str) -> str:
        data = self._post("index", {
            "collection": self.collection,
            "conversation_id": conversation_id,
            "id": item_id,
            "text": text,
            "type": item_type,
        })
        return str(data.get("vector_ref", item_id))

    def delete(self, conversation_id: str, item_ids: list[str] | None = None) -> None:
        self._post("delete", {
            "collection": self.collection,
            "conversation_id": conversation_id,
            "ids": item_ids,
        })

    def close(self) -> None:
        self._client.close()
