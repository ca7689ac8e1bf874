"""Unit tests for the built-in tools: get_current_datetime and read_webpage.

HTTP goes through httpx.MockTransport; DNS resolution is patched so the
address checks never touch the network.
"""

from datetime import datetime
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from turnstile.api.models import ToolCallPart
from turnstile.api.tools import ToolRegistry
from turnstile.api.web_tools import (
    check_url,
    extract_readable,
    get_current_datetime,
    read_webpage,
    register_builtin_tools,
)
from turnstile.exceptions import ToolExecutionError

PUBLIC = AsyncMock(return_value=["93.184.216.34"])


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _html(body: str, title: str = "Example") -> str:
    return f"<html><head><title>{title}</title><style>p {{}}</style></head><body>{body}</body></html>"


class TestCurrentDatetime:
    def test_default_utc(self):
        result = get_current_datetime()
        assert result["timezone"] == "UTC"
        assert result["utc_offset"] == "+0000"
        assert datetime.fromisoformat(result["iso"]).tzinfo is not None

    def test_named_timezone(self):
        result = get_current_datetime("Asia/Tokyo")
        assert result["utc_offset"] == "+0900"

    def test_unknown_timezone(self):
        with pytest.raises(ToolExecutionError, match="Unknown timezone"):
            get_current_datetime("Mars/Olympus_Mons")


class TestCheckUrl:
    @pytest.mark.asyncio
    async def test_scheme_required(self):
        with pytest.raises(ToolExecutionError, match="http"):
            await check_url("ftp://example.com/file")

    @pytest.mark.asyncio
    async def test_blocked_hostname(self):
        with pytest.raises(ToolExecutionError, match="Blocked hostname"):
            await check_url("http://localhost:8000/admin")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address", ["127.0.0.1", "10.1.2.3", "192.168.0.10", "169.254.169.254", "::1"])
    async def test_private_addresses_blocked(self, address):
        with patch("turnstile.api.web_tools._resolve", AsyncMock(return_value=[address])):
            with pytest.raises(ToolExecutionError, match="blocked IP range"):
                await check_url("http://internal.example.com/")

    @pytest.mark.asyncio
    async def test_public_address_allowed(self):
        with patch("turnstile.api.web_tools._resolve", PUBLIC):
            await check_url("https://example.com/")


class TestExtractReadable:
    def test_strips_scripts_styles_and_tags(self):
        html = _html("<script>alert(1)</script><nav>menu</nav><p>Hello &amp; welcome</p><p>Second</p>")
        text = extract_readable(html)
        assert "alert" not in text
        assert "menu" not in text
        assert "Hello & welcome" in text
        assert text.endswith("Second")


class TestReadWebpage:
    @pytest.mark.asyncio
    async def test_html_page(self, settings):
        async with _client(lambda r: httpx.Response(
            200, text=_html("<p>Body text</p>"), headers={"content-type": "text/html; charset=utf-8"},
        )) as http:
            with patch("turnstile.api.web_tools._resolve", PUBLIC):
                result = await read_webpage("https://example.com/", settings=settings, http=http)

        assert result["title"] == "Example"
        assert "Body text" in result["content"]
        assert result["truncated"] is False

    @pytest.mark.asyncio
    async def test_truncates_to_max_chars(self, settings):
        async with _client(lambda r: httpx.Response(
            200, text="x" * 500, headers={"content-type": "text/plain"},
        )) as http:
            with patch("turnstile.api.web_tools._resolve", PUBLIC):
                result = await read_webpage("https://example.com/a.txt", 100, settings=settings, http=http)

        assert len(result["content"]) == 100
        assert result["truncated"] is True

    @pytest.mark.asyncio
    async def test_binary_content_rejected(self, settings):
        async with _client(lambda r: httpx.Response(
            200, content=b"%PDF-1.7", headers={"content-type": "application/pdf"},
        )) as http:
            with patch("turnstile.api.web_tools._resolve", PUBLIC):
                with pytest.raises(ToolExecutionError, match="binary content"):
                    await read_webpage("https://example.com/doc.pdf", settings=settings, http=http)

    @pytest.mark.asyncio
    async def test_redirect_followed(self, settings):
        def handler(request):
            if request.url.path == "/old":
                return httpx.Response(301, headers={"location": "/new"})
            return httpx.Response(200, text="moved here", headers={"content-type": "text/plain"})

        async with _client(handler) as http:
            with patch("turnstile.api.web_tools._resolve", PUBLIC):
                result = await read_webpage("https://example.com/old", settings=settings, http=http)

        assert result["url"] == "https://example.com/new"
        assert result["content"] == "moved here"

    @pytest.mark.asyncio
    async def test_redirect_to_private_address_blocked(self, settings):
        async def resolve(hostname):
            return ["10.0.0.5"] if hostname == "internal.example.com" else ["93.184.216.34"]

        async with _client(lambda r: httpx.Response(
            302, headers={"location": "http://internal.example.com/secret"},
        )) as http:
            with patch("turnstile.api.web_tools._resolve", resolve):
                with pytest.raises(ToolExecutionError, match="Blocked redirect"):
                    await read_webpage("https://example.com/", settings=settings, http=http)

    @pytest.mark.asyncio
    async def test_too_many_redirects(self, settings):
        async with _client(lambda r: httpx.Response(302, headers={"location": "/loop"})) as http:
            with patch("turnstile.api.web_tools._resolve", PUBLIC):
                with pytest.raises(ToolExecutionError, match="Too many redirects"):
                    await read_webpage("https://example.com/loop", settings=settings, http=http)

    @pytest.mark.asyncio
    async def test_http_error_status(self, settings):
        async with _client(lambda r: httpx.Response(404, text="nope", headers={"content-type": "text/plain"})) as http:
            with patch("turnstile.api.web_tools._resolve", PUBLIC):
                with pytest.raises(ToolExecutionError, match="HTTP 404"):
                    await read_webpage("https://example.com/missing", settings=settings, http=http)


class TestRegistration:
    @pytest.mark.asyncio
    async def test_registered_and_invocable(self, settings):
        registry = ToolRegistry()
        async with _client(lambda r: httpx.Response(200, text="hi", headers={"content-type": "text/plain"})) as http:
            register_builtin_tools(registry, settings, http)
            assert [d.name for d in registry.descriptors()] == ["get_current_datetime", "read_webpage"]

            with patch("turnstile.api.web_tools._resolve", PUBLIC):
                result = await registry.invoke(
                    ToolCallPart(id="c1", name="read_webpage", args={"url": "https://example.com/"}),
                )
            assert result.value["content"] == "hi"

    @pytest.mark.asyncio
    async def test_blocked_fetch_is_error_result(self, settings):
        registry = ToolRegistry()
        async with _client(lambda r: httpx.Response(200)) as http:
            register_builtin_tools(registry, settings, http)
            result = await registry.invoke(
                ToolCallPart(id="c1", name="read_webpage", args={"url": "http://localhost/"}),
            )
        assert result.is_error
        assert "Blocked hostname" in result.error
