"""
Unit tests for SDK layer.

Tests the vendor client wrappers against mocked SDK clients: response
normalization, error mapping, streaming and cancellation.
"""

import logging
import threading
from unittest.mock import MagicMock, Mock, patch

import anthropic
import httpx
import openai
import pytest

from ai_governor.core.errors import (
    ConfigurationError,
    InvalidRequest,
    RequestCancelled,
    UnexpectedResponseShape,
    VendorUnavailable,
)
from ai_governor.sdk.anthropic_client import AnthropicVendor
from ai_governor.sdk.base import build_usage
from ai_governor.sdk.openai_client import OpenAIVendor

CLAUDE = "claude-sonnet-4-5-20250929"


def _payload(data: dict) -> Mock:
    """SDK object whose model_dump() returns `data`."""
    return Mock(model_dump=Mock(return_value=data))


def _stream(*events: dict) -> MagicMock:
    stream = MagicMock()
    stream.__iter__.return_value = iter([_payload(e) for e in events])
    return stream


def _request(url: str) -> httpx.Request:
    return httpx.Request("POST", url)


class TestBuildUsage:

    def test_reported_usage(self):
        usage = build_usage("prompt", None, "answer", 10, 5)
        assert (usage.input_tokens, usage.output_tokens, usage.estimated) == (10, 5, False)

    def test_missing_side_is_estimated(self):
        usage = build_usage("a" * 40, "b" * 4, "c" * 8, None, 3)
        assert usage.input_tokens == 11
        assert usage.output_tokens == 3
        assert usage.estimated is True


class TestAnthropicVendor:
    """Test AnthropicVendor with a mocked SDK client."""

    def setup_method(self):
        self.client = Mock()
        self.vendor = AnthropicVendor(api_key="test-key", client=self.client)

    def test_missing_credential(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ConfigurationError, match="ANTHROPIC_API_KEY"):
            AnthropicVendor()

    @patch("ai_governor.sdk.anthropic_client.Anthropic")
    def test_sdk_client_configuration(self, mock_anthropic_class):
        AnthropicVendor(api_key="k", base_url="https://proxy.local", timeout_seconds=5.0, max_retries=1)
        mock_anthropic_class.assert_called_once_with(
            api_key="k", base_url="https://proxy.local", timeout=5.0, max_retries=1,
        )

    def test_generate_text(self):
        self.client.messages.create.return_value = _payload({
            "id": "msg_1",
            "model": CLAUDE,
            "content": [{"type": "text", "text": "Hello there"}],
            "stop_reason": "end_turn",
            "usage": {"input_tokens": 12, "output_tokens": 5},
        })

        result = self.vendor.generate_text("Hi", CLAUDE, system_prompt="Be kind",
                                           temperature=0.2, max_tokens=50, timeout=3.0)

        assert result.content == "Hello there"
        assert result.usage.input_tokens == 12
        assert result.usage.output_tokens == 5
        assert result.usage.estimated is False
        assert result.finish_reason == "end_turn"
        assert result.provider == "anthropic"
        self.client.messages.create.assert_called_once_with(
            timeout=3.0,
            model=CLAUDE,
            max_tokens=50,
            temperature=0.2,
            messages=[{"role": "user", "content": "Hi"}],
            system="Be kind",
        )

    def test_missing_usage_is_estimated(self):
        self.client.messages.create.return_value = _payload({
            "model": CLAUDE,
            "content": [{"type": "text", "text": "12345678"}],
        })
        result = self.vendor.generate_text("abcd", CLAUDE)
        assert result.usage.estimated is True
        assert result.usage.input_tokens == 1
        assert result.usage.output_tokens == 2

    def test_empty_content_is_vendor_unavailable(self):
        self.client.messages.create.return_value = _payload({"model": CLAUDE, "content": []})
        with pytest.raises(VendorUnavailable):
            self.vendor.generate_text("Hi", CLAUDE)

    def test_non_text_first_block(self):
        self.client.messages.create.return_value = _payload({
            "model": CLAUDE,
            "content": [{"type": "tool_use", "id": "tool_1", "name": "lookup"}],
        })
        with pytest.raises(UnexpectedResponseShape, match="tool_use"):
            self.vendor.generate_text("Hi", CLAUDE)

    def test_unknown_block_type(self):
        self.client.messages.create.return_value = _payload({
            "model": CLAUDE,
            "content": [{"type": "hologram"}],
        })
        with pytest.raises(UnexpectedResponseShape):
            self.vendor.generate_text("Hi", CLAUDE)

    @pytest.mark.parametrize("status,expected", [
        (400, InvalidRequest),
        (404, InvalidRequest),
        (429, VendorUnavailable),
        (500, VendorUnavailable),
        (529, VendorUnavailable),
    ])
    def test_status_errors(self, status, expected):
        request = _request("https://api.anthropic.com/v1/messages")
        self.client.messages.create.side_effect = anthropic.APIStatusError(
            "failure", response=httpx.Response(status, request=request), body=None,
        )
        with pytest.raises(expected):
            self.vendor.generate_text("Hi", CLAUDE)

    def test_connection_and_timeout_errors(self):
        request = _request("https://api.anthropic.com/v1/messages")
        for error in (anthropic.APIConnectionError(request=request),
                      anthropic.APITimeoutError(request=request)):
            self.client.messages.create.side_effect = error
            with pytest.raises(VendorUnavailable) as exc_info:
                self.vendor.generate_text("Hi", CLAUDE)
            assert exc_info.value.provider == "anthropic"
            assert exc_info.value.model == CLAUDE

    def test_stream_text(self):
        self.client.messages.create.return_value = stream = _stream(
            {"type": "message_start", "message": {"model": CLAUDE, "usage": {"input_tokens": 20}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "ping"},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 7}},
            {"type": "message_stop"},
        )
        chunks = []

        result = self.vendor.stream_text("Hi", CLAUDE, on_chunk=chunks.append)

        assert chunks == ["Hel", "lo"]
        assert result.content == "Hello"
        assert (result.usage.input_tokens, result.usage.output_tokens) == (20, 7)
        assert result.usage.estimated is False
        assert result.finish_reason == "end_turn"
        stream.close.assert_called_once()
        _, kwargs = self.client.messages.create.call_args
        assert kwargs["stream"] is True

    def test_stream_without_usage_is_estimated(self, caplog):
        self.client.messages.create.return_value = _stream(
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "abcdefgh"}},
        )
        with caplog.at_level(logging.WARNING, logger="ai_governor.sdk.anthropic_client"):
            result = self.vendor.stream_text("abcd", CLAUDE, on_chunk=lambda chunk: None)

        assert result.usage.estimated is True
        assert result.usage.output_tokens == 2
        assert "did not report usage" in caplog.text

    def test_stream_cancellation(self):
        self.client.messages.create.return_value = stream = _stream(
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "first"}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "second"}},
        )
        cancel = threading.Event()

        with pytest.raises(RequestCancelled) as exc_info:
            self.vendor.stream_text("Hi", CLAUDE, on_chunk=lambda chunk: cancel.set(),
                                    cancel_event=cancel)

        assert exc_info.value.partial.content == "first"
        assert exc_info.value.partial.usage.estimated is True
        stream.close.assert_called_once()

    def test_empty_stream(self):
        self.client.messages.create.return_value = _stream({"type": "message_stop"})
        with pytest.raises(VendorUnavailable, match="no content"):
            self.vendor.stream_text("Hi", CLAUDE, on_chunk=lambda chunk: None)

    def test_no_embeddings(self):
        assert self.vendor.supports_embeddings is False
        with pytest.raises(InvalidRequest):
            self.vendor.generate_embedding("text", CLAUDE)


class TestOpenAIVendor:
    """Test OpenAIVendor with a mocked SDK client."""

    def setup_method(self):
        self.client = Mock()
        self.vendor = OpenAIVendor(api_key="test-key", client=self.client)

    def test_missing_credential(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            OpenAIVendor()

    def test_credential_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "env-key")
        with patch("ai_governor.sdk.openai_client.OpenAI") as mock_openai_class:
            OpenAIVendor()
        assert mock_openai_class.call_args.kwargs["api_key"] == "env-key"

    def test_generate_text(self):
        self.client.chat.completions.create.return_value = _payload({
            "id": "chatcmpl-1",
            "model": "gpt-4o-mini-2024-07-18",
            "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hi!"},
                         "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 9, "completion_tokens": 2, "total_tokens": 11},
        })

        result = self.vendor.generate_text("Hello", "gpt-4o-mini", system_prompt="Be brief")

        assert result.content == "Hi!"
        assert result.model == "gpt-4o-mini-2024-07-18"
        assert result.usage.total_tokens == 11
        assert result.finish_reason == "stop"
        _, kwargs = self.client.chat.completions.create.call_args
        assert kwargs["messages"] == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hello"},
        ]
        assert kwargs["timeout"] == 30.0

    @pytest.mark.parametrize("data", [
        {"model": "gpt-4o-mini", "choices": []},
        {"model": "gpt-4o-mini", "choices": [{"message": {"content": None, "refusal": "no"}}]},
    ])
    def test_no_content_is_vendor_unavailable(self, data):
        self.client.chat.completions.create.return_value = _payload(data)
        with pytest.raises(VendorUnavailable):
            self.vendor.generate_text("Hello", "gpt-4o-mini")

    def test_malformed_payload(self):
        self.client.chat.completions.create.return_value = _payload({"choices": "not-a-list"})
        with pytest.raises(UnexpectedResponseShape):
            self.vendor.generate_text("Hello", "gpt-4o-mini")

    @pytest.mark.parametrize("status,expected", [
        (422, InvalidRequest),
        (401, VendorUnavailable),
        (503, VendorUnavailable),
    ])
    def test_status_errors(self, status, expected):
        request = _request("https://api.openai.com/v1/chat/completions")
        self.client.chat.completions.create.side_effect = openai.APIStatusError(
            "failure", response=httpx.Response(status, request=request), body=None,
        )
        with pytest.raises(expected):
            self.vendor.generate_text("Hello", "gpt-4o-mini")

    def test_timeout_error(self):
        request = _request("https://api.openai.com/v1/chat/completions")
        self.client.chat.completions.create.side_effect = openai.APITimeoutError(request=request)
        with pytest.raises(VendorUnavailable):
            self.vendor.generate_text("Hello", "gpt-4o-mini")

    def test_other_api_error(self):
        request = _request("https://api.openai.com/v1/chat/completions")
        self.client.chat.completions.create.side_effect = openai.APIError("odd", request, body=None)
        with pytest.raises(UnexpectedResponseShape):
            self.vendor.generate_text("Hello", "gpt-4o-mini")

    def test_stream_text_with_usage_chunk(self):
        self.client.chat.completions.create.return_value = stream = _stream(
            {"model": "gpt-4o-mini", "choices": [{"delta": {"content": "Hel"}}]},
            {"model": "gpt-4o-mini", "choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {"model": "gpt-4o-mini", "choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 2}},
        )
        chunks = []

        result = self.vendor.stream_text("Hello", "gpt-4o-mini", on_chunk=chunks.append)

        assert chunks == ["Hel", "lo"]
        assert result.content == "Hello"
        assert (result.usage.input_tokens, result.usage.output_tokens) == (9, 2)
        assert result.finish_reason == "stop"
        stream.close.assert_called_once()
        _, kwargs = self.client.chat.completions.create.call_args
        assert kwargs["stream_options"] == {"include_usage": True}

    def test_stream_without_usage_is_estimated(self):
        self.client.chat.completions.create.return_value = _stream(
            {"choices": [{"delta": {"content": "abcdefgh"}}]},
        )
        result = self.vendor.stream_text("abcd", "gpt-4o-mini", on_chunk=lambda chunk: None)
        assert result.usage.estimated is True
        assert result.usage.total_tokens == 3

    def test_stream_error_mid_flight(self):
        request = _request("https://api.openai.com/v1/chat/completions")
        stream = MagicMock()
        stream.__iter__.side_effect = openai.APIConnectionError(request=request)
        self.client.chat.completions.create.return_value = stream

        with pytest.raises(VendorUnavailable):
            self.vendor.stream_text("Hello", "gpt-4o-mini", on_chunk=lambda chunk: None)
        stream.close.assert_called_once()

    def test_generate_embedding(self):
        self.client.embeddings.create.return_value = _payload({
            "model": "text-embedding-3-small",
            "data": [{"index": 0, "embedding": [0.25, -0.5]}],
            "usage": {"prompt_tokens": 4, "total_tokens": 4},
        })

        result = self.vendor.generate_embedding("Python developer", "text-embedding-3-small", timeout=2.0)

        assert result.vector == [0.25, -0.5]
        assert result.usage.input_tokens == 4
        assert result.usage.output_tokens == 0
        self.client.embeddings.create.assert_called_once_with(
            model="text-embedding-3-small", input="Python developer", timeout=2.0,
        )

    def test_embedding_without_data(self):
        self.client.embeddings.create.return_value = _payload({"model": "text-embedding-3-small", "data": []})
        with pytest.raises(VendorUnavailable):
            self.vendor.generate_embedding("text", "text-embedding-3-small")
