"""
Anthropic vendor client.

Wraps the Anthropic messages API and normalizes its responses. Anthropic
offers no embeddings endpoint.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import List, Optional

from anthropic import Anthropic, APIConnectionError, APIError, APIStatusError
from pydantic import ValidationError

from ..core.errors import (
    InvalidRequest,
    RequestCancelled,
    UnexpectedResponseShape,
    VendorUnavailable,
)
from ..core.routing import PROVIDER_ANTHROPIC
from .base import (
    ChunkCallback,
    EmbeddingResult,
    TextResult,
    VendorClient,
    build_usage,
    resolve_credential,
    status_error,
)
from .schemas import (
    ANTHROPIC_STREAM_EVENTS,
    AnthropicContentBlockDelta,
    AnthropicMessage,
    AnthropicMessageDelta,
    AnthropicMessageStart,
    AnthropicTextBlock,
    AnthropicTextDelta,
)

logger = logging.getLogger(__name__)

API_KEY_ENV = "ANTHROPIC_API_KEY"


class AnthropicVendor(VendorClient):
    """Claude models through the Anthropic SDK."""

    provider = PROVIDER_ANTHROPIC
    supports_embeddings = False

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout_seconds: float = 30.0, max_retries: int = 3, client=None):
        """Initialize the Anthropic client.

        Args:
            api_key: API key; defaults to ANTHROPIC_API_KEY
            base_url: Optional API base URL override
            timeout_seconds: Default per-request timeout
            max_retries: SDK transport retries inside a single attempt; each
                retry gets the full timeout, so 0 makes `timeout` a hard bound
            client: Preconfigured SDK client (tests)

        Raises:
            ConfigurationError: If no API key is configured
        """
        api_key = resolve_credential(api_key, API_KEY_ENV, "Anthropic")
        self.timeout_seconds = timeout_seconds
        self.client = client or Anthropic(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_seconds,
            max_retries=max_retries,
        )

    @contextmanager
    def _vendor_errors(self, model: str):
        try:
            yield
        except APIStatusError as e:
            raise status_error(e.status_code, str(e), self.provider, model) from e
        except APIConnectionError as e:
            # Timeouts are a subclass of connection errors
            raise VendorUnavailable(
                f"Anthropic request for {model} failed: {e}", provider=self.provider, model=model
            ) from e
        except APIError as e:
            raise UnexpectedResponseShape(f"Anthropic API error: {e}", provider=self.provider) from e
        except ValidationError as e:
            raise UnexpectedResponseShape(
                f"Unexpected Anthropic payload ({e.error_count()} errors)", provider=self.provider
            ) from e

    def _request(self, prompt: str, model: str, system_prompt: Optional[str],
                 temperature: float, max_tokens: int) -> dict:
        request = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            request["system"] = system_prompt
        return request

    def generate_text(
        self,
        prompt: str,
        model: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout: Optional[float] = None,
    ) -> TextResult:
        request = self._request(prompt, model, system_prompt, temperature, max_tokens)
        start_time = time.time()
        with self._vendor_errors(model):
            response = self.client.messages.create(timeout=timeout or self.timeout_seconds, **request)
            message = AnthropicMessage.model_validate(response.model_dump())

        if not message.content:
            raise VendorUnavailable(
                f"Anthropic response for {model} has no content", provider=self.provider, model=model
            )
        first = message.content[0]
        if not isinstance(first, AnthropicTextBlock):
            raise UnexpectedResponseShape(
                f"Unexpected Anthropic content block type: {first.type}", provider=self.provider
            )

        usage = message.usage
        result = TextResult(
            content=first.text,
            usage=build_usage(
                prompt, system_prompt, first.text,
                usage.input_tokens if usage else None,
                usage.output_tokens if usage else None,
            ),
            model=message.model or model,
            provider=self.provider,
            finish_reason=message.stop_reason,
        )
        logger.debug(
            "Anthropic completion model=%s tokens=%d duration=%.2fs",
            result.model, result.usage.total_tokens, time.time() - start_time,
        )
        return result

    def stream_text(
        self,
        prompt: str,
        model: str,
        on_chunk: ChunkCallback,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> TextResult:
        request = self._request(prompt, model, system_prompt, temperature, max_tokens)
        chunks: List[str] = []
        input_tokens = output_tokens = None
        finish_reason = None
        response_model = model

        def result() -> TextResult:
            content = "".join(chunks)
            return TextResult(
                content=content,
                usage=build_usage(prompt, system_prompt, content, input_tokens, output_tokens),
                model=response_model,
                provider=self.provider,
                finish_reason=finish_reason,
            )

        with self._vendor_errors(model):
            stream = self.client.messages.create(
                stream=True, timeout=timeout or self.timeout_seconds, **request
            )
            try:
                for event in stream:
                    if cancel_event is not None and cancel_event.is_set():
                        raise RequestCancelled(
                            f"Anthropic stream for {model} cancelled", partial=result()
                        )
                    payload = event.model_dump()
                    schema = ANTHROPIC_STREAM_EVENTS.get(payload.get("type"))
                    if schema is None:
                        continue
                    parsed = schema.model_validate(payload)

                    if isinstance(parsed, AnthropicMessageStart):
                        response_model = parsed.message.model or model
                        if parsed.message.usage is not None:
                            input_tokens = parsed.message.usage.input_tokens
                    elif isinstance(parsed, AnthropicContentBlockDelta):
                        if isinstance(parsed.delta, AnthropicTextDelta) and parsed.delta.text:
                            chunks.append(parsed.delta.text)
                            on_chunk(parsed.delta.text)
                    elif isinstance(parsed, AnthropicMessageDelta):
                        finish_reason = parsed.delta.stop_reason or finish_reason
                        if parsed.usage is not None and parsed.usage.output_tokens is not None:
                            output_tokens = parsed.usage.output_tokens
            finally:
                stream.close()

        final = result()
        if not final.content:
            raise VendorUnavailable(
                f"Anthropic stream for {model} produced no content", provider=self.provider, model=model
            )
        if final.usage.estimated:
            logger.warning(
                "Anthropic stream for %s did not report usage; estimated %d tokens",
                model, final.usage.total_tokens,
            )
        return final

    def generate_embedding(self, text: str, model: str,
                           timeout: Optional[float] = None) -> EmbeddingResult:
        raise InvalidRequest("Anthropic does not provide an embeddings API")
