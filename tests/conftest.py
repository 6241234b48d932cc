"""
Shared test doubles: a controllable clock and scripted vendor clients.
"""

from datetime import datetime, timedelta, timezone

import pytest

from ai_governor.core.errors import InvalidRequest, RequestCancelled
from ai_governor.core.token_counter import TokenUsage
from ai_governor.sdk.base import EmbeddingResult, TextResult, VendorClient

START = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

LONG_ANSWER = "A thorough answer that is comfortably longer than fifty characters in total."


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeVendor(VendorClient):
    """Vendor that replays scripted outcomes.

    Each outcome is either a string (answered with fixed usage) or an
    exception instance (raised). The last outcome repeats once the script
    is exhausted.
    """

    def __init__(self, provider: str, outcomes=None, supports_embeddings: bool = False,
                 usage: TokenUsage = TokenUsage(input_tokens=100, output_tokens=50)):
        self.provider = provider
        self.supports_embeddings = supports_embeddings
        self.outcomes = list(outcomes or [LONG_ANSWER])
        self.usage = usage
        self.calls = []

    def _next(self, model: str):
        self.calls.append(model)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def generate_text(self, prompt, model, system_prompt=None, temperature=0.7,
                      max_tokens=1000, timeout=None):
        content = self._next(model)
        return TextResult(content=content, usage=self.usage, model=model, provider=self.provider)

    def stream_text(self, prompt, model, on_chunk, system_prompt=None, temperature=0.7,
                    max_tokens=1000, timeout=None, cancel_event=None):
        content = self._next(model)
        sent = []
        for word in content.split(" "):
            if cancel_event is not None and cancel_event.is_set():
                partial = TextResult(
                    content=" ".join(sent),
                    usage=TokenUsage(input_tokens=10, output_tokens=len(sent), estimated=True),
                    model=model,
                    provider=self.provider,
                )
                raise RequestCancelled("cancelled", partial=partial)
            sent.append(word)
            on_chunk(word)
        return TextResult(content=content, usage=self.usage, model=model, provider=self.provider)

    def generate_embedding(self, text, model, timeout=None):
        if not self.supports_embeddings:
            raise InvalidRequest("no embeddings")
        self._next(model)
        return EmbeddingResult(
            vector=[0.1, 0.2, 0.3],
            usage=TokenUsage(input_tokens=8, output_tokens=0),
            model=model,
            provider=self.provider,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def anthropic_vendor():
    return FakeVendor("anthropic")


@pytest.fixture
def openai_vendor():
    return FakeVendor("openai", supports_embeddings=True)
