"""
Tests for SafeFetcher redirect handling
"""
import httpx
import pytest

from app.features.scan.services.fetch.safe_fetcher import SafeFetcher
from app.platform.exceptions import SafetyRejection, TransientFetchError


def make_fetcher(safety, routes, max_redirects=5):
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        requested.append(url)
        if url not in routes:
            return httpx.Response(404, text="not found")
        status, headers, body = routes[url]
        return httpx.Response(status, headers=headers, text=body)

    client = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=False)
    return SafeFetcher(safety=safety, client=client, max_redirects=max_redirects), requested


class TestSafeFetcher:

    def test_plain_get(self, safety):
        fetcher, requested = make_fetcher(safety, {
            "https://example.com/": (200, {"content-type": "text/html"}, "<p>hi</p>"),
        })
        result = fetcher.get("https://example.com/")

        assert result.status_code == 200
        assert result.final_url == "https://example.com/"
        assert result.is_html
        assert "hi" in result.text
        assert requested == ["https://example.com/"]

    def test_follows_safe_relative_redirect(self, safety):
        fetcher, _ = make_fetcher(safety, {
            "https://example.com/old": (301, {"location": "/new"}, ""),
            "https://example.com/new": (200, {"content-type": "text/html"}, "moved"),
        })
        result = fetcher.get("https://example.com/old")

        assert result.url == "https://example.com/old"
        assert result.final_url == "https://example.com/new"

    def test_redirect_to_private_ip_is_never_requested(self, safety):
        fetcher, requested = make_fetcher(safety, {
            "https://example.com/go": (302, {"location": "http://169.254.169.254/latest/meta-data/"}, ""),
        })

        with pytest.raises(SafetyRejection):
            fetcher.get("https://example.com/go")
        assert requested == ["https://example.com/go"]

    def test_unsafe_start_url_makes_no_request(self, safety):
        fetcher, requested = make_fetcher(safety, {})

        with pytest.raises(SafetyRejection):
            fetcher.get("http://127.0.0.1:8080/admin")
        assert requested == []

    def test_redirect_loop_gives_up(self, safety):
        fetcher, requested = make_fetcher(safety, {
            "https://example.com/a": (302, {"location": "/b"}, ""),
            "https://example.com/b": (302, {"location": "/a"}, ""),
        }, max_redirects=3)

        with pytest.raises(TransientFetchError, match="Too many redirects"):
            fetcher.get("https://example.com/a")
        assert len(requested) == 4

    def test_redirect_without_location(self, safety):
        fetcher, _ = make_fetcher(safety, {"https://example.com/": (302, {}, "")})

        with pytest.raises(TransientFetchError):
            fetcher.get("https://example.com/")

    def test_error_status_is_transient(self, safety):
        fetcher, _ = make_fetcher(safety, {"https://example.com/": (503, {}, "busy")})

        with pytest.raises(TransientFetchError) as exc:
            fetcher.get("https://example.com/")
        assert exc.value.context["status"] == 503

    def test_transport_error_is_transient(self, safety):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        fetcher = SafeFetcher(safety=safety, client=client)

        with pytest.raises(TransientFetchError):
            fetcher.get("https://example.com/")


class TestResolve:

    def test_returns_end_of_redirect_chain(self, safety):
        fetcher, requested = make_fetcher(safety, {
            "https://example.com/": (301, {"location": "https://www.example.com/"}, ""),
            "https://www.example.com/": (302, {"location": "/home"}, ""),
            "https://www.example.com/home": (200, {"content-type": "text/html"}, "<p>home</p>"),
        })

        assert fetcher.resolve("https://example.com/") == "https://www.example.com/home"
        assert requested == [
            "https://example.com/",
            "https://www.example.com/",
            "https://www.example.com/home",
        ]

    def test_error_status_still_resolves(self, safety):
        fetcher, _ = make_fetcher(safety, {"https://example.com/gone": (404, {}, "missing")})

        assert fetcher.resolve("https://example.com/gone") == "https://example.com/gone"

    def test_private_hop_rejected(self, safety):
        fetcher, requested = make_fetcher(safety, {
            "https://example.com/": (302, {"location": "http://10.0.0.5/"}, ""),
        })

        with pytest.raises(SafetyRejection):
            fetcher.resolve("https://example.com/")
        assert requested == ["https://example.com/"]
