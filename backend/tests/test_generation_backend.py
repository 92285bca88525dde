"""
Tests for the content service client and the RQ dispatcher.
"""
from types import SimpleNamespace

import httpx
import pytest

from backend.features.generation.backend import (
    GenerationError,
    HttpGenerationBackend,
    get_generator,
    register_generator,
    unregister_generator,
)
from backend.queue_client import FAILURE_CALLBACK, WORKER_FUNCTION, RQDispatcher, queue_name, rq_job_id


class TestHttpGenerationBackend:
    def test_posts_job_with_shop_token(self, make_shop):
        shop = make_shop("growth_extra")
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["token"] = request.headers.get("X-Shopify-Access-Token")
            return httpx.Response(200, json={"summary": {"productCount": 7}})

        backend = HttpGenerationBackend(
            "http://content.test/", client=httpx.Client(transport=httpx.MockTransport(handler))
        )
        assert backend(shop, "sitemap", {"forceBasicSeo": False}) == {"productCount": 7}
        assert seen == {"path": "/generate/sitemap", "token": "shpat_test"}

    def test_service_errors_become_generation_errors(self, make_shop):
        shop = make_shop("growth_extra")
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        with pytest.raises(GenerationError):
            HttpGenerationBackend("http://content.test", client=client)(shop, "sitemap", {})

    def test_opens_and_closes_its_own_client(self, make_shop, monkeypatch):
        shop = make_shop("growth_extra")
        clients = []

        class FakeClient:
            def __init__(self, **kwargs):
                self.closed = False
                clients.append(self)

            def __enter__(self):
                return self

            def __exit__(self, *exc_info):
                self.closed = True

            def post(self, url, **kwargs):
                return httpx.Response(200, json={"summary": {"productCount": 1}}, request=httpx.Request("POST", url))

        monkeypatch.setattr("backend.features.generation.backend.httpx.Client", FakeClient)
        backend = HttpGenerationBackend("http://content.test")

        assert backend(shop, "sitemap", {}) == {"productCount": 1}
        assert backend(shop, "sitemap", {}) == {"productCount": 1}
        assert len(clients) == 2
        assert all(c.closed for c in clients)

    def test_unconfigured_service(self, make_shop, monkeypatch):
        from backend.core.config import settings

        monkeypatch.setattr(settings, "GENERATION_SERVICE_URL", None)
        with pytest.raises(GenerationError):
            HttpGenerationBackend()(make_shop("growth_extra"), "sitemap", {})


def test_registered_generator_wins():
    def fake(shop, job_type, options):
        return {}

    register_generator("schema", fake)
    try:
        assert get_generator("schema") is fake
    finally:
        unregister_generator("schema")
    assert isinstance(get_generator("schema"), HttpGenerationBackend)


class TestRQDispatcher:
    def test_ids_and_queue_names(self):
        assert queue_name("schema") == "generation:schema"
        assert rq_job_id("demo.myshopify.com", "schema", 4) == "schema-demo_myshopify_com-v4"

    def test_dispatch_enqueues_worker_call(self, monkeypatch):
        calls = []

        class FakeQueue:
            def enqueue(self, func, *args, **kwargs):
                calls.append((func, args, kwargs))
                return SimpleNamespace(id=kwargs["job_id"])

        dispatcher = RQDispatcher(connection=object())
        monkeypatch.setattr(dispatcher, "queue_for", lambda job_type: FakeQueue())

        job_id = dispatcher.dispatch("demo.myshopify.com", "sitemap", 1)

        assert job_id == "sitemap-demo_myshopify_com-v1"
        func, args, kwargs = calls[0]
        assert func == WORKER_FUNCTION
        assert args == ("demo.myshopify.com", "sitemap", 1)
        assert kwargs["job_timeout"]
        assert kwargs["on_failure"].func == FAILURE_CALLBACK
