"""Tests for native-API backend selection."""

from dataclasses import replace

import pytest

from errors import InvalidRequest
from models import ModelDirectory
from routing import RouteKind, Router, extract_digest, extract_model, is_remote_routed
from upstream import Backend, BackendClient


@pytest.fixture
def router(test_config):
    return Router(test_config)


class TestRouteTable:
    """Test (method, path) -> route kind resolution."""

    @pytest.mark.parametrize(
        "method,path,kind",
        [
            ("GET", "/api/tags", RouteKind.TAGS),
            ("GET", "/api/ps", RouteKind.PS),
            ("GET", "/api/version", RouteKind.VERSION),
            ("HEAD", "/api/blobs/sha256:abc", RouteKind.BLOB),
            ("POST", "/api/blobs/sha256:abc", RouteKind.BLOB),
            ("POST", "/api/pull", RouteKind.LOCAL_ONLY),
            ("DELETE", "/api/delete", RouteKind.LOCAL_ONLY),
            ("POST", "/api/copy", RouteKind.LOCAL_ONLY),
            ("POST", "/api/chat", RouteKind.MODEL_ROUTED),
            ("POST", "/api/generate", RouteKind.MODEL_ROUTED),
            ("POST", "/api/embed", RouteKind.MODEL_ROUTED),
            ("POST", "/api/embeddings", RouteKind.MODEL_ROUTED),
            ("POST", "/api/show", RouteKind.MODEL_ROUTED),
            ("post", "/api/show", RouteKind.MODEL_ROUTED),
            ("GET", "/api/chat", RouteKind.DEFAULT),
            ("POST", "/api/tags", RouteKind.DEFAULT),
            ("GET", "/api/blobs/sha256:abc", RouteKind.DEFAULT),
            ("POST", "/api/chatty", RouteKind.DEFAULT),
            ("GET", "/api/unknown", RouteKind.DEFAULT),
        ],
    )
    def test_resolve(self, router, method, path, kind):
        assert router.resolve(method, path) is kind

    def test_aggregated_kinds(self):
        assert {k for k in RouteKind if k.is_aggregated} == {RouteKind.TAGS, RouteKind.PS, RouteKind.VERSION}


class TestDecide:
    """Test backend selection."""

    def test_allowlisted_model_goes_remote(self, router):
        d = router.decide("POST", "/api/chat", b'{"model": "gpt-oss:120b", "messages": []}')
        assert d.backend is Backend.REMOTE
        assert d.model == "gpt-oss:120b"

    def test_other_model_goes_local(self, router):
        d = router.decide("POST", "/api/generate", b'{"model": "llama3", "prompt": "hi"}')
        assert d.backend is Backend.LOCAL

    @pytest.mark.parametrize("body", [b"", b"not json", b"[]", b'{"prompt": "x"}', b'{"model": 5}'])
    def test_no_parsable_model_defaults_local(self, router, body):
        d = router.decide("POST", "/api/show", body)
        assert d.backend is Backend.LOCAL
        assert d.model is None

    def test_default_backend_is_configurable(self, test_config):
        router = Router(replace(test_config, default_backend="remote"))
        assert router.decide("POST", "/api/chat", b"{}").backend is Backend.REMOTE
        assert router.decide("GET", "/api/unknown").backend is Backend.REMOTE
        assert router.decide("POST", "/api/chat", b'{"model": "llama3"}').backend is Backend.LOCAL

    def test_model_management_always_local(self, router):
        d = router.decide("POST", "/api/pull", b'{"model": "gpt-oss:120b"}')
        assert d.kind is RouteKind.LOCAL_ONLY
        assert d.backend is Backend.LOCAL

    def test_blob_always_local(self, router):
        d = router.decide("HEAD", "/api/blobs/sha256:abc")
        assert d.backend is Backend.LOCAL

    @pytest.mark.parametrize("path", ["/api/blobs", "/api/blobs/", "/api/blobs//"])
    def test_blob_without_digest(self, router, path):
        with pytest.raises(InvalidRequest):
            router.decide("POST", path)

    def test_metadata_not_forwarded(self, router):
        d = router.decide("GET", "/api/tags")
        assert d.kind is RouteKind.TAGS
        assert d.backend is None

    def test_route_for_model(self, router):
        assert router.route_for_model("gpt-oss:20b") is Backend.REMOTE
        assert router.route_for_model("llama3") is Backend.LOCAL
        assert router.route_for_model(None) is Backend.LOCAL


class TestExtractors:
    """Test body and path helpers."""

    def test_extract_model(self):
        assert extract_model(b'{"model": "llama3"}') == "llama3"
        assert extract_model(b'{"model": ""}') is None
        assert extract_model(None) is None
        assert extract_model(b"\xff\xfe") is None

    def test_extract_digest(self):
        assert extract_digest("/api/blobs/sha256:abc") == "sha256:abc"


class TestAllowlistAgreement:
    """Both surfaces pick the remote runtime for exactly the same names."""

    @pytest.mark.parametrize("model", ["gpt-oss:120b", "gpt-oss:20b", "llama3", "gpt-oss", "GPT-OSS:120B"])
    def test_router_and_directory_agree(self, test_config, model):
        directory = ModelDirectory(BackendClient(test_config), test_config)
        routed_remote = Router(test_config).route_for_model(model) is Backend.REMOTE
        assert routed_remote is directory.is_remote_routed(model)
        assert routed_remote is is_remote_routed(model, test_config.remote_models)

    @pytest.mark.parametrize("model", [None, ""])
    def test_missing_model_is_not_remote(self, test_config, model):
        assert is_remote_routed(model, test_config.remote_models) is False
