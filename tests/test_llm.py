"""Tests for protagonist.llm: HttpProvider and EchoProvider."""

import base64
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from protagonist.llm import EchoProvider, HttpProvider, LLMError


# ---------------------------------------------------------------------------
# EchoProvider
# ---------------------------------------------------------------------------

class TestEchoProvider:
    async def test_returns_prompt_unchanged(self) -> None:
        assert await EchoProvider().generate_text("any", "hello world") == "hello world"

    async def test_image_is_empty(self) -> None:
        assert await EchoProvider().generate_image("any", "x") == b""


# ---------------------------------------------------------------------------
# HttpProvider
# ---------------------------------------------------------------------------

def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


def _chat(content: str) -> dict:
    return {"choices": [{"message": {"content": content}}]}


class TestHttpProviderText:
    @pytest.fixture
    def provider(self) -> HttpProvider:
        return HttpProvider(provider_url="http://localhost:8080/v1/", api_key="sk-test")

    async def test_happy_path(self, provider: HttpProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat('{"text": "hi"}')))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await provider.generate_text("gemini-2.5-pro", "prompt")
        assert result == '{"text": "hi"}'

    async def test_trailing_v1_stripped(self, provider: HttpProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await provider.generate_text("m", "prompt")
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/chat/completions"

    async def test_bearer_header(self, provider: HttpProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await provider.generate_text("m", "prompt")
        assert mock_post.call_args[1]["headers"]["Authorization"] == "Bearer sk-test"

    async def test_no_auth_header_without_key(self) -> None:
        provider = HttpProvider("http://localhost:8080")
        mock_post = AsyncMock(return_value=_mock_response(_chat("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await provider.generate_text("m", "prompt")
        assert "Authorization" not in mock_post.call_args[1]["headers"]

    async def test_schema_sent_as_response_format(self, provider: HttpProvider) -> None:
        schema = {"type": "object"}
        mock_post = AsyncMock(return_value=_mock_response(_chat("{}")))
        with patch("httpx.AsyncClient.post", mock_post):
            await provider.generate_text("m", "prompt", schema)
        body = mock_post.call_args[1]["json"]
        assert body["model"] == "m"
        assert body["response_format"]["json_schema"]["schema"] == schema

    async def test_no_schema_no_response_format(self, provider: HttpProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat("plain")))
        with patch("httpx.AsyncClient.post", mock_post):
            await provider.generate_text("m", "prompt")
        assert "response_format" not in mock_post.call_args[1]["json"]

    async def test_unexpected_shape_raises(self, provider: HttpProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": []}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await provider.generate_text("m", "prompt")

    async def test_http_error_raises(self, provider: HttpProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=503))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="HTTP 503"):
                await provider.generate_text("m", "prompt")

    async def test_connect_error_raises(self, provider: HttpProvider) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Cannot connect"):
                await provider.generate_text("m", "prompt")

    async def test_timeout_raises(self, provider: HttpProvider) -> None:
        mock_post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="timed out"):
                await provider.generate_text("m", "prompt")


class TestHttpProviderImage:
    async def test_decodes_b64(self) -> None:
        provider = HttpProvider("http://localhost:8080")
        body = {"data": [{"b64_json": base64.b64encode(b"PNGDATA").decode()}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            image = await provider.generate_image("img", "a castle")
        assert image == b"PNGDATA"
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/images/generations"

    async def test_empty_data_raises(self) -> None:
        provider = HttpProvider("http://localhost:8080")
        mock_post = AsyncMock(return_value=_mock_response({"data": []}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="No image generated"):
                await provider.generate_image("img", "a castle")
