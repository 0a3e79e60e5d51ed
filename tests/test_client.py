"""Tests for cinder.client: litellm routing, streaming and error wrapping."""

import types
from unittest.mock import MagicMock, patch

import pytest

from cinder.client import CEREBRAS_BASE_URL, LiteLLMClient, build_client
from cinder.report import ConfigError, ProviderError


def _mock_response(content="ok", total_tokens=None):
    choice = MagicMock()
    choice.message = MagicMock(content=content)
    resp = MagicMock()
    resp.choices = [choice]
    resp.usage = types.SimpleNamespace(total_tokens=total_tokens)
    return resp


def _chunk(text=None, total_tokens=None):
    choices = []
    if text is not None:
        choices = [types.SimpleNamespace(delta=types.SimpleNamespace(content=text))]
    usage = None
    if total_tokens is not None:
        usage = types.SimpleNamespace(total_tokens=total_tokens)
    return types.SimpleNamespace(choices=choices, usage=usage)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class TestRouting:
    def test_cerebras_routing(self):
        client = build_client("cerebras", "llama3.1-8b", api_key="csk-test")
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            assert client.send([{"role": "user", "content": "hi"}], False) == "ok"
            kwargs = mock_comp.call_args[1]
            assert kwargs["model"] == "cerebras/llama3.1-8b"
            assert kwargs["api_key"] == "csk-test"
            assert kwargs["api_base"] == CEREBRAS_BASE_URL
            assert kwargs["temperature"] == 0.7
            assert kwargs["stream"] is False
            assert "max_tokens" not in kwargs
            assert "stream_options" not in kwargs

    def test_openai_routing(self):
        client = build_client(
            "openai", "gpt-4o-mini", api_key="sk-test", max_output_tokens=256
        )
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            client.send([], False)
            kwargs = mock_comp.call_args[1]
            assert kwargs["model"] == "openai/gpt-4o-mini"
            assert kwargs["max_tokens"] == 256
            assert "api_base" not in kwargs

    def test_custom_base_url(self):
        client = build_client(
            "openai", "gpt-4o", api_key="k", base_url="http://localhost:8080/v1"
        )
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            client.send([], False)
            assert mock_comp.call_args[1]["api_base"] == "http://localhost:8080/v1"

    def test_temperature_omitted_when_none(self):
        client = LiteLLMClient("openai", "gpt-4o", api_key="k", temperature=None)
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            client.send([], False)
            assert "temperature" not in mock_comp.call_args[1]


class TestBuildClient:
    def test_missing_key(self):
        with pytest.raises(ConfigError, match="CEREBRAS_API_KEY"):
            build_client("cerebras", "llama3.1-8b", api_key=None)

    def test_missing_openai_key(self):
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            build_client("openai", "gpt-4o", api_key="")

    def test_unknown_provider(self):
        with pytest.raises(ConfigError, match="unknown provider"):
            LiteLLMClient("anthropic", "x")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class TestResponses:
    def test_usage_recorded(self):
        client = build_client("cerebras", "llama3.1-8b", api_key="k")
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response(total_tokens=321)
            client.send([], False)
        assert client.last_usage == 321

    def test_missing_usage(self):
        client = build_client("cerebras", "llama3.1-8b", api_key="k")
        client.last_usage = 99
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response(total_tokens=None)
            client.send([], False)
        assert client.last_usage is None

    def test_none_content_is_empty(self):
        client = build_client("cerebras", "llama3.1-8b", api_key="k")
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response(content=None)
            assert client.send([], False) == ""

    def test_provider_failure_wrapped(self):
        client = build_client("cerebras", "llama3.1-8b", api_key="k")
        with patch("litellm.completion", side_effect=RuntimeError("503 Service Unavailable")):
            with pytest.raises(ProviderError, match="LLM call failed: 503"):
                client.send([], False)

    def test_malformed_response(self):
        client = build_client("cerebras", "llama3.1-8b", api_key="k")
        resp = MagicMock()
        resp.choices = []
        with patch("litellm.completion", return_value=resp):
            with pytest.raises(ProviderError, match="malformed response"):
                client.send([], False)


class TestStreaming:
    def test_chunks_and_usage(self):
        client = build_client("cerebras", "llama3.1-8b", api_key="k")
        chunks = [_chunk("Hel"), _chunk(""), _chunk("lo"), _chunk(total_tokens=17)]
        with patch("litellm.completion", return_value=iter(chunks)) as mock_comp:
            stream = client.send([], True)
            assert list(stream) == ["Hel", "lo"]
            kwargs = mock_comp.call_args[1]
            assert kwargs["stream"] is True
            assert kwargs["stream_options"] == {"include_usage": True}
        assert client.last_usage == 17

    def test_stream_failure_wrapped(self):
        client = build_client("cerebras", "llama3.1-8b", api_key="k")

        def broken():
            yield _chunk("a")
            raise ConnectionError("reset by peer")

        with patch("litellm.completion", return_value=broken()):
            stream = client.send([], True)
            assert next(stream) == "a"
            with pytest.raises(ProviderError, match="reset by peer"):
                next(stream)
