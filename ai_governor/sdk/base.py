"""
Vendor client contract.

Every LLM vendor is wrapped behind VendorClient so the rest of the system
only ever sees normalized TextResult / EmbeddingResult values and the
governance error kinds.
"""

import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..core.errors import ConfigurationError, InvalidRequest, VendorUnavailable
from ..core.token_counter import TokenUsage, estimate_tokens

ChunkCallback = Callable[[str], None]

# Caller errors: retrying on another vendor would fail the same way
CALLER_ERROR_STATUSES = frozenset({400, 404, 422})


@dataclass(frozen=True)
class TextResult:
    content: str
    usage: TokenUsage
    model: str
    provider: str
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class EmbeddingResult:
    vector: List[float] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage.zero)
    model: str = ""
    provider: str = ""


def resolve_credential(explicit: Optional[str], env_var: str, provider: str) -> str:
    """Return the explicit key or the environment variable, failing loudly if neither is set."""
    api_key = explicit or os.environ.get(env_var)
    if not api_key or not api_key.strip():
        raise ConfigurationError(
            f"{provider} API key is not configured: pass api_key or set {env_var}"
        )
    return api_key


def build_usage(prompt: str, system_prompt: Optional[str], completion: str,
                input_tokens: Optional[int], output_tokens: Optional[int]) -> TokenUsage:
    """Vendor-reported usage, or an estimate for whichever side is missing."""
    if input_tokens is not None and output_tokens is not None:
        return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
    if input_tokens is None:
        input_tokens = estimate_tokens(prompt) + estimate_tokens(system_prompt or "")
    if output_tokens is None:
        output_tokens = estimate_tokens(completion)
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens, estimated=True)


def status_error(status_code: int, message: str, provider: str, model: str):
    """Map a non-2xx vendor status to the error kind the executor acts on."""
    if status_code in CALLER_ERROR_STATUSES:
        return InvalidRequest(f"{provider} rejected the request for {model} ({status_code}): {message}")
    return VendorUnavailable(
        f"{provider} returned HTTP {status_code} for {model}: {message}",
        provider=provider,
        model=model,
    )


class VendorClient(ABC):
    """Capability contract shared by all vendors.

    Implementations raise VendorUnavailable for transport failures,
    timeouts and non-2xx statuses, InvalidRequest for caller errors and
    UnexpectedResponseShape for payloads they cannot normalize.
    """

    provider: str = ""
    supports_embeddings: bool = False

    @abstractmethod
    def generate_text(
        self,
        prompt: str,
        model: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout: Optional[float] = None,
    ) -> TextResult:
        """Single-shot completion."""

    @abstractmethod
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
        """Streamed completion; each text fragment is passed to `on_chunk`.

        Raises:
            RequestCancelled: If `cancel_event` is set mid-stream; `partial`
                holds the text and usage produced so far
        """

    @abstractmethod
    def generate_embedding(
        self,
        text: str,
        model: str,
        timeout: Optional[float] = None,
    ) -> EmbeddingResult:
        """Embedding vector for `text`."""
