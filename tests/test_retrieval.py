"""Tests for retrieval gateways and the indexer."""

import json

import httpx
import pytest

from conftest import FailingGateway, FakeGateway
from context_memory.retrieval.http import HttpRetrievalGateway
from context_memory.retrieval.indexer import RetrievalIndexer, message_item_id, segment_item_id
from context_memory.retrieval.memory import InMemoryRetrievalGateway, tokenize
from context_memory.types import (
    ConfigurationError,
    RetrievalGatewayError,
    RetrievalTimeoutError,
    Segment,
    SegmentType,
)


class TestInMemoryGateway:
    def test_search_ranks_by_overlap(self):
        gw = InMemoryRetrievalGateway()
        gw.index("chat-1", "message:1", "Vegetarian restaurants in Alfama", "message")
        gw.index("chat-1", "message:2", "Flights from Boston to Lisbon", "message")
        gw.index("chat-1", "message:3", "Vegetarian tasting menu in Alfama near the castle", "message")
        hits = gw.search("chat-1", "vegetarian Alfama", top_k=5)
        assert {h.item_id for h in hits} == {"message:1", "message:3"}
        assert hits[0].similarity >= hits[1].similarity

    def test_conversation_isolation(self):
        gw = InMemoryRetrievalGateway()
        gw.index("chat-1", "message:1", "Lisbon hotels", "message")
        assert gw.search("chat-2", "Lisbon", top_k=5) == []

    def test_top_k_and_empty_query(self):
        gw = InMemoryRetrievalGateway()
        for i in range(4):
            gw.index("chat-1", f"message:{i}", f"Lisbon note {i}", "message")
        assert len(gw.search("chat-1", "Lisbon", top_k=2)) == 2
        assert gw.search("chat-1", "the and", top_k=2) == []
        assert gw.search("chat-1", "Lisbon", top_k=0) == []

    def test_delete(self):
        gw = InMemoryRetrievalGateway()
        gw.index("chat-1", "message:1", "a Lisbon", "message")
        gw.index("chat-1", "message:2", "b Porto", "message")
        gw.delete("chat-1", ["message:1"])
        assert gw.count("chat-1") == 1
        gw.delete("chat-1")
        assert gw.count("chat-1") == 0

    def test_index_returns_stable_ref(self):
        gw = InMemoryRetrievalGateway()
        assert gw.index("c", "message:1", "x", "message") == gw.index("c", "message:1", "y", "message")

    def test_tokenize_drops_stopwords(self):
        assert tokenize("The budget is $3,000 for Lisbon") == ["budget", "$3,000", "lisbon"]


def _recording_transport(responses):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responses(request)

    return httpx.MockTransport(handler), requests


class TestHttpGateway:
    def test_search_posts_and_parses(self):
        transport, requests = _recording_transport(lambda r: httpx.Response(200, json={
            "results": [{"id": "message:4", "score": 0.9}, {"id": "", "score": 0.5}, {"id": "segment:s1"}],
        }))
        gw = HttpRetrievalGateway("http://vectors.local/", api_key="k", transport=transport)
        hits = gw.search("chat-1", "vegetarian", 3)

        assert [(h.item_id, h.similarity) for h in hits] == [("message:4", 0.9), ("segment:s1", 0.0)]
        request = requests[0]
        assert str(request.url) == "http://vectors.local/search"
        assert request.headers["Authorization"] == "Bearer k"
        body = json.loads(request.content)
        assert body == {
            "collection": "conversation-context",
            "conversation_id": "chat-1",
            "query": "vegetarian",
            "top_k": 3,
        }

    def test_index_returns_vector_ref(self):
        transport, requests = _recording_transport(lambda r: httpx.Response(200, json={"vector_ref": "v-1"}))
        gw = HttpRetrievalGateway("http://vectors.local", transport=transport)
        assert gw.index("chat-1", "message:1", "hello", "message") == "v-1"
        assert json.loads(requests[0].content)["type"] == "message"

    def test_delete_sends_ids(self):
        transport, requests = _recording_transport(lambda r: httpx.Response(200))
        gw = HttpRetrievalGateway("http://vectors.local", transport=transport)
        gw.delete("chat-1", None)
        assert str(requests[0].url).endswith("/delete")
        assert json.loads(requests[0].content)["ids"] is None

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("MY_VECTOR_KEY", "secret")
        transport, requests = _recording_transport(lambda r: httpx.Response(200, json={"results": []}))
        gw = HttpRetrievalGateway("http://vectors.local", api_key_env="MY_VECTOR_KEY", transport=transport)
        gw.search("chat-1", "q", 1)
        assert requests[0].headers["Authorization"] == "Bearer secret"

    def test_non_200_raises(self):
        transport, _ = _recording_transport(lambda r: httpx.Response(503, text="overloaded"))
        gw = HttpRetrievalGateway("http://vectors.local", transport=transport)
        with pytest.raises(RetrievalGatewayError, match="503"):
            gw.search("chat-1", "q", 1)

    def test_timeout_raises_timeout_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        gw = HttpRetrievalGateway("http://vectors.local", transport=httpx.MockTransport(handler))
        with pytest.raises(RetrievalTimeoutError):
            gw.search("chat-1", "q", 1)

    def test_connection_error_raises_gateway_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gw = HttpRetrievalGateway("http://vectors.local", transport=httpx.MockTransport(handler))
        with pytest.raises(RetrievalGatewayError) as exc_info:
            gw.search("chat-1", "q", 1)
        assert not isinstance(exc_info.value, RetrievalTimeoutError)

    def test_invalid_json_raises(self):
        transport, _ = _recording_transport(lambda r: httpx.Response(200, text="<html>"))
        gw = HttpRetrievalGateway("http://vectors.local", transport=transport)
        with pytest.raises(RetrievalGatewayError, match="invalid JSON"):
            gw.search("chat-1", "q", 1)

    def test_missing_endpoint(self):
        with pytest.raises(ConfigurationError):
            HttpRetrievalGateway("")


class TestRetrievalIndexer:
    def test_index_message_records_ref(self, store):
        gw = FakeGateway()
        indexer = RetrievalIndexer(gw, store)
        assert indexer.index_message("chat-1", 7, "Vegetarian please") is True
        assert gw.indexed["chat-1"] == {"message:7": "Vegetarian please"}
        (ref,) = store.get_embedding_refs("chat-1")
        assert (ref.item_id, ref.vector_ref) == ("message:7", "ref-message:7")

    def test_blank_text_skipped(self, store):
        gw = FakeGateway()
        assert RetrievalIndexer(gw, store).index_message("chat-1", 1, "   ") is False
        assert gw.indexed == {}

    def test_no_gateway(self, store):
        assert RetrievalIndexer(None, store).index_message("chat-1", 1, "hi") is False

    def test_segment_indexing_toggle(self, store):
        seg = Segment(
            segment_id="s1", conversation_id="chat-1", segment_type=SegmentType.MEDIUM,
            start_position=1, end_position=5, summary="Lisbon planning",
        )
        gw = FakeGateway()
        assert RetrievalIndexer(gw, store).index_segment(seg) is True
        assert gw.indexed["chat-1"] == {"segment:s1": "Lisbon planning"}
        assert RetrievalIndexer(FakeGateway(), store, index_segments=False).index_segment(seg) is False

    def test_gateway_failure_logged_not_raised(self, store, caplog):
        indexer = RetrievalIndexer(FailingGateway(), store)
        assert indexer.index_message("chat-1", 1, "hello") is False
        assert "Indexing message:1" in caplog.text
        indexer.remove("chat-1")
        assert store.get_embedding_refs("chat-1") == []

    def test_remove_items(self, store):
        gw = FakeGateway()
        indexer = RetrievalIndexer(gw, store)
        indexer.index_message("chat-1", 1, "one")
        indexer.index_message("chat-1", 2, "two")
        indexer.remove("chat-1", [message_item_id(1)])
        assert [r.item_id for r in store.get_embedding_refs("chat-1")] == ["message:2"]
        indexer.remove("chat-1", [])
        assert gw.deleted == [("chat-1", ["message:1"])]

    def test_item_ids(self):
        assert message_item_id(3) == "message:3"
        assert segment_item_id("abc") == "segment:abc"
