"""
OpenAI vendor client.

Wraps chat completions and embeddings and normalizes their responses.
Failures are loud: every SDK error is mapped to a governance error kind.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import List, Optional

from openai import APIConnectionError, APIError, APIStatusError, OpenAI
from pydantic import ValidationError

from ..core.errors import RequestCancelled, UnexpectedResponseShape, VendorUnavailable
from ..core.routing import PROVIDER_OPENAI
from ..core.token_counter import TokenUsage, estimate_tokens
from .base import (
    ChunkCallback,
    EmbeddingResult,
    TextResult,
    VendorClient,
    build_usage,
    resolve_credential,
    status_error,
)
from .schemas import OpenAIChatCompletion, OpenAIChatCompletionChunk, OpenAIEmbeddingResponse

logger = logging.getLogger(__name__)

API_KEY_ENV = "OPENAI_API_KEY"


class OpenAIVendor(VendorClient):
    """GPT and embedding models through the OpenAI SDK."""

    provider = PROVIDER_OPENAI
    supports_embeddings = True

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout_seconds: float = 30.0, max_retries: int = 3, client=None):
        """Initialize the OpenAI client.

        Args:
            api_key: API key; defaults to OPENAI_API_KEY
            base_url: Optional API base URL override
            timeout_seconds: Default per-request timeout
            max_retries: SDK transport retries inside a single attempt; each
                retry gets the full timeout, so 0 makes `timeout` a hard bound
            client: Preconfigured SDK client (tests)

        Raises:
            ConfigurationError: If no API key is configured
        """
        api_key = resolve_credential(api_key, API_KEY_ENV, "OpenAI")
        self.timeout_seconds = timeout_seconds
        self.client = client or OpenAI(
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
                f"OpenAI request for {model} failed: {e}", provider=self.provider, model=model
            ) from e
        except APIError as e:
            raise UnexpectedResponseShape(f"OpenAI API error: {e}", provider=self.provider) from e
        except ValidationError as e:
            raise UnexpectedResponseShape(
                f"Unexpected OpenAI payload ({e.error_count()} errors)", provider=self.provider
            ) from e

    def _messages(self, prompt: str, system_prompt: Optional[str]) -> List[dict]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def generate_text(
        self,
        prompt: str,
        model: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout: Optional[float] = None,
    ) -> TextResult:
        start_time = time.time()
        with self._vendor_errors(model):
            response = self.client.chat.completions.create(
                model=model,
                messages=self._messages(prompt, system_prompt),
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout or self.timeout_seconds,
            )
            completion = OpenAIChatCompletion.model_validate(response.model_dump())

        if not completion.choices or completion.choices[0].message.content is None:
            raise VendorUnavailable(
                f"OpenAI response for {model} has no content", provider=self.provider, model=model
            )
        choice = completion.choices[0]
        content = choice.message.content

        usage = completion.usage
        result = TextResult(
            content=content,
            usage=build_usage(
                prompt, system_prompt, content,
                usage.prompt_tokens if usage else None,
                usage.completion_tokens if usage else None,
            ),
            model=completion.model or model,
            provider=self.provider,
            finish_reason=choice.finish_reason,
        )
        logger.debug(
            "OpenAI completion model=%s tokens=%d duration=%.2fs",
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
            stream = self.client.chat.completions.create(
                model=model,
                messages=self._messages(prompt, system_prompt),
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout or self.timeout_seconds,
                stream=True,
                stream_options={"include_usage": True},
            )
            try:
                for event in stream:
                    if cancel_event is not None and cancel_event.is_set():
                        raise RequestCancelled(
                            f"OpenAI stream for {model} cancelled", partial=result()
                        )
                    chunk = OpenAIChatCompletionChunk.model_validate(event.model_dump())
                    response_model = chunk.model or response_model
                    for choice in chunk.choices:
                        if choice.delta.content:
                            chunks.append(choice.delta.content)
                            on_chunk(choice.delta.content)
                        finish_reason = choice.finish_reason or finish_reason
                    # Usage arrives on a final chunk with no choices
                    if chunk.usage is not None:
                        input_tokens = chunk.usage.prompt_tokens
                        output_tokens = chunk.usage.completion_tokens
            finally:
                stream.close()

        final = result()
        if not final.content:
            raise VendorUnavailable(
                f"OpenAI stream for {model} produced no content", provider=self.provider, model=model
            )
        if final.usage.estimated:
            logger.warning(
                "OpenAI stream for %s did not report usage; estimated %d tokens",
                model, final.usage.total_tokens,
            )
        return final

    def generate_embedding(self, text: str, model: str,
                           timeout: Optional[float] = None) -> EmbeddingResult:
        with self._vendor_errors(model):
            response = self.client.embeddings.create(
                model=model,
                input=text,
                timeout=timeout or self.timeout_seconds,
            )
            payload = OpenAIEmbeddingResponse.model_validate(response.model_dump())

        if not payload.data:
            raise VendorUnavailable(
                f"OpenAI embedding response for {model} has no data", provider=self.provider, model=model
            )

        if payload.usage is not None:
            usage = TokenUsage(input_tokens=payload.usage.prompt_tokens, output_tokens=0)
        else:
            usage = TokenUsage(input_tokens=estimate_tokens(text), output_tokens=0, estimated=True)

        return EmbeddingResult(
            vector=payload.data[0].embedding,
            usage=usage,
            model=payload.model or model,
            provider=self.provider,
        )
