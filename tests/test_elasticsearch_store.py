"""
Tests for ElasticsearchStore

All HTTP goes through a mocked requests.Session; no cluster is needed.
"""

import json
import unittest
from unittest.mock import MagicMock

import requests

from inbox_indexer.modules.elasticsearch_store import INDEX_MAPPING, ElasticsearchStore
from inbox_indexer.modules.errors import StoreError
from inbox_indexer.modules.models import SearchQuery
from inbox_indexer.utils.config import StoreConfig


def _make_config(**overrides) -> StoreConfig:
    defaults = dict(
        url="http://localhost:9200",
        index="emails",
        username=None,
        password=None,
        verify_certs=True,
        request_timeout=10,
    )
    defaults.update(overrides)
    return StoreConfig(**defaults)


def _response(status_code=200, body=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body or {}
    response.text = text
    return response


class StoreTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.session = MagicMock()
        self.store = ElasticsearchStore(_make_config(), session=self.session)

    def last_request(self):
        args, kwargs = self.session.request.call_args
        return args[0], args[1], kwargs


class TestSessionSetup(unittest.TestCase):

    def test_credentials_and_verification_applied(self):
        session = MagicMock()
        ElasticsearchStore(
            _make_config(username="elastic", password="pw", verify_certs=False),
            session=session,
        )

        self.assertEqual(session.auth, ("elastic", "pw"))
        self.assertFalse(session.verify)


class TestWrites(StoreTestCase):

    async def test_upsert_waits_for_visibility(self):
        self.session.request.return_value = _response(201)

        await self.store.upsert("abc", {"subject": "hi"}, wait_for_visible=True)

        method, url, kwargs = self.last_request()
        self.assertEqual(method, "PUT")
        self.assertEqual(url, "http://localhost:9200/emails/_doc/abc")
        self.assertEqual(kwargs["params"], {"refresh": "wait_for"})
        self.assertEqual(kwargs["json"], {"subject": "hi"})

    async def test_bulk_upsert_sends_ndjson_and_maps_item_errors(self):
        self.session.request.return_value = _response(200, {
            "errors": True,
            "items": [
                {"index": {"_id": "a", "status": 201}},
                {"index": {"_id": "b", "status": 400, "error": {"type": "mapper_parsing_exception"}}},
                {"index": {"_id": "c", "status": 200}},
            ],
        })

        outcomes = await self.store.bulk_upsert(
            [("a", {"n": 1}), ("b", {"n": 2}), ("c", {"n": 3})], wait_for_visible=True
        )

        self.assertEqual(outcomes, [None, {"type": "mapper_parsing_exception"}, None])
        method, url, kwargs = self.last_request()
        self.assertEqual((method, url), ("POST", "http://localhost:9200/_bulk"))
        self.assertEqual(kwargs["headers"], {"Content-Type": "application/x-ndjson"})

        lines = kwargs["data"].splitlines()
        self.assertEqual(len(lines), 6)
        self.assertEqual(json.loads(lines[0]), {"index": {"_index": "emails", "_id": "a"}})
        self.assertEqual(json.loads(lines[3]), {"n": 2})
        self.assertTrue(kwargs["data"].endswith("\n"))

    async def test_bulk_item_count_mismatch_raises(self):
        self.session.request.return_value = _response(200, {"items": []})

        with self.assertRaises(StoreError):
            await self.store.bulk_upsert([("a", {})])

    async def test_empty_bulk_makes_no_request(self):
        self.assertEqual(await self.store.bulk_upsert([]), [])
        self.assertEqual(await self.store.bulk_delete([]), [])
        self.session.request.assert_not_called()

    async def test_update_sends_partial_doc(self):
        self.session.request.return_value = _response(200)

        await self.store.update("abc", {"category": "Spam"})

        method, url, kwargs = self.last_request()
        self.assertEqual(method, "POST")
        self.assertEqual(url, "http://localhost:9200/emails/_update/abc")
        self.assertEqual(kwargs["json"], {"doc": {"category": "Spam"}})
        self.assertEqual(kwargs["params"], {})

    async def test_delete_missing_document_is_not_an_error(self):
        self.session.request.return_value = _response(404)

        await self.store.delete("gone")

    async def test_bulk_delete(self):
        self.session.request.return_value = _response(200, {
            "items": [
                {"delete": {"_id": "a", "status": 200}},
                {"delete": {"_id": "b", "status": 404}},
            ],
        })

        outcomes = await self.store.bulk_delete(["a", "b"])

        self.assertEqual(outcomes, [None, None])
        _, _, kwargs = self.last_request()
        self.assertEqual(json.loads(kwargs["data"].splitlines()[1]),
                         {"delete": {"_index": "emails", "_id": "b"}})

    async def test_document_ids_are_url_quoted(self):
        self.session.request.return_value = _response(201)

        await self.store.upsert("<id@host>/x", {})

        _, url, _ = self.last_request()
        self.assertEqual(url, "http://localhost:9200/emails/_doc/%3Cid%40host%3E%2Fx")


class TestErrors(StoreTestCase):

    async def test_http_error_raises_store_error(self):
        self.session.request.return_value = _response(503, text="unavailable")

        with self.assertRaises(StoreError) as ctx:
            await self.store.upsert("abc", {})

        self.assertEqual(ctx.exception.status_code, 503)

    async def test_transport_error_raises_store_error(self):
        self.session.request.side_effect = requests.ConnectionError("refused")

        with self.assertRaises(StoreError):
            await self.store.count()


class TestReads(StoreTestCase):

    async def test_exists(self):
        self.session.request.return_value = _response(200)
        self.assertTrue(await self.store.exists("abc"))

        self.session.request.return_value = _response(404)
        self.assertFalse(await self.store.exists("abc"))

    async def test_get_returns_source_or_none(self):
        self.session.request.return_value = _response(200, {"_source": {"id": "abc"}})
        self.assertEqual(await self.store.get("abc"), {"id": "abc"})

        self.session.request.return_value = _response(404)
        self.assertIsNone(await self.store.get("abc"))

    async def test_count_size_and_categories(self):
        self.session.request.side_effect = [
            _response(200, {"count": 42}),
            _response(200, {"indices": {"emails": {"primaries": {"store": {"size_in_bytes": 2048}}}}}),
            _response(200, {"aggregations": {"categories": {"buckets": [
                {"key": "Spam", "doc_count": 3},
                {"key": "Uncategorized", "doc_count": 39},
            ]}}}),
        ]

        self.assertEqual(await self.store.count(), 42)
        self.assertEqual(await self.store.size_in_bytes(), 2048)
        self.assertEqual(await self.store.category_counts(),
                         {"Spam": 3, "Uncategorized": 39})

    async def test_search_builds_filters(self):
        self.session.request.return_value = _response(200, {
            "hits": {"total": {"value": 1}, "hits": [{"_source": {"id": "abc"}}]},
        })

        total, sources = await self.store.search(
            SearchQuery(query="invoice", account_id="account-1", folder="INBOX", size=5)
        )

        self.assertEqual(total, 1)
        self.assertEqual(sources, [{"id": "abc"}])
        _, url, kwargs = self.last_request()
        self.assertEqual(url, "http://localhost:9200/emails/_search")
        body = kwargs["json"]
        self.assertEqual(body["size"], 5)
        self.assertEqual(body["query"]["bool"]["filter"], [
            {"term": {"account_id": "account-1"}},
            {"term": {"folder": "INBOX"}},
        ])
        self.assertEqual(body["query"]["bool"]["must"][0]["multi_match"]["query"], "invoice")


class TestIndexManagement(StoreTestCase):

    async def test_ensure_index_creates_missing_index(self):
        self.session.request.side_effect = [_response(404), _response(200)]

        await self.store.ensure_index()

        method, url, kwargs = self.last_request()
        self.assertEqual((method, url), ("PUT", "http://localhost:9200/emails"))
        self.assertEqual(kwargs["json"], INDEX_MAPPING)

    async def test_ensure_index_leaves_existing_index(self):
        self.session.request.return_value = _response(200)

        await self.store.ensure_index()

        self.assertEqual(self.session.request.call_count, 1)

    async def test_close_closes_session(self):
        await self.store.close()
        self.session.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
