"""
Request execution state machine.

Every governed call runs through the same explicit sequence:

    CACHE_CHECK -> QUOTA_CHECK -> EXECUTE_PRIMARY -> [EXECUTE_FALLBACK]
        -> RECORD -> CACHE_WRITE -> DONE

with DENIED and FAILED as the other terminal states. Each handler returns
the next state; the visited states are kept on the context.

Fallback policy: only VendorUnavailable from the primary triggers a
fallback, and exactly one fallback attempt is made. A stream that already
delivered chunks to the caller never falls back.
"""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from ai_governor.config.loader import GovernorConfig
from ai_governor.storage.models import (
    OPERATION_EMBEDDING,
    OPERATION_STREAMING,
    OPERATION_TEXT,
    UsageRecord,
)

from .cache import EMBEDDING_NAMESPACE, TEXT_NAMESPACE, ResponseCache, generate_cache_key
from .errors import (
    AllVendorsFailed,
    InvalidRequest,
    QuotaExceeded,
    RequestCancelled,
    VendorUnavailable,
)
from .ledger import CostLedger
from .pricing import CostBreakdown
from .quota import DEFAULT_ESTIMATED_COST, QuotaDecision, QuotaGuard, is_anonymous
from .routing import ModelChoice, ModelRouter, Route, feature_cache_ttl, provider_for_model
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

# Stored error text is truncated to keep ledger rows small
MAX_ERROR_LENGTH = 500


class ExecutionState(Enum):
    CACHE_CHECK = "cache_check"
    QUOTA_CHECK = "quota_check"
    EXECUTE_PRIMARY = "execute_primary"
    EXECUTE_FALLBACK = "execute_fallback"
    RECORD = "record"
    CACHE_WRITE = "cache_write"
    DONE = "done"
    DENIED = "denied"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ExecutionState.DONE, ExecutionState.DENIED, ExecutionState.FAILED})


@dataclass
class GenerationOptions:
    """Per-call options supplied by feature code."""
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    feature: Optional[str] = None
    subscription_tier: str = "free"
    complexity: Optional[str] = None
    model: Optional[str] = None
    fallback_model: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000
    use_cache: bool = True
    cache_ttl: Optional[int] = None
    timeout_ms: Optional[int] = None
    cancel_event: Optional[threading.Event] = None
    estimated_cost: float = DEFAULT_ESTIMATED_COST


@dataclass(frozen=True)
class GovernedResponse:
    content: str
    usage: TokenUsage
    cost: CostBreakdown
    model: str
    provider: str
    cached: bool
    request_id: str
    finish_reason: Optional[str] = None
    fallback_used: bool = False

    @property
    def estimated(self) -> bool:
        return self.usage.estimated


@dataclass(frozen=True)
class EmbeddingResponse:
    vector: List[float]
    usage: TokenUsage
    cost: CostBreakdown
    model: str
    provider: str
    cached: bool
    request_id: str


@dataclass
class ExecutionContext:
    """Mutable state of one governed call as it moves through the machine."""
    prompt: str
    options: GenerationOptions
    route: Route
    session_id: str
    operation: str = OPERATION_TEXT
    on_chunk: Optional[Callable[[str], None]] = None
    cache_key: Optional[str] = None
    choice: Optional[ModelChoice] = None
    result: object = None
    record: Optional[UsageRecord] = None
    decision: Optional[QuotaDecision] = None
    response: Union[GovernedResponse, EmbeddingResponse, None] = None
    attempts: List[VendorUnavailable] = field(default_factory=list)
    error: Optional[BaseException] = None
    chunks_emitted: int = 0
    trail: List[ExecutionState] = field(default_factory=list)

    @property
    def streaming(self) -> bool:
        return self.operation == OPERATION_STREAMING

    @property
    def embedding(self) -> bool:
        return self.operation == OPERATION_EMBEDDING

    def emit(self, chunk: str) -> None:
        self.chunks_emitted += 1
        self.on_chunk(chunk)


class RequestExecutor:
    """Runs governed calls against the configured vendors."""

    def __init__(self, vendors: Dict[str, object], router: ModelRouter, cache: ResponseCache,
                 ledger: CostLedger, quota: QuotaGuard, config: GovernorConfig):
        self.vendors = vendors
        self.router = router
        self.cache = cache
        self.ledger = ledger
        self.quota = quota
        self.config = config
        self._handlers = {
            ExecutionState.CACHE_CHECK: self._check_cache,
            ExecutionState.QUOTA_CHECK: self._check_quota,
            ExecutionState.EXECUTE_PRIMARY: self._execute_primary,
            ExecutionState.EXECUTE_FALLBACK: self._execute_fallback,
            ExecutionState.RECORD: self._record,
            ExecutionState.CACHE_WRITE: self._write_cache,
        }

    def execute_text(self, prompt: str, options: GenerationOptions,
                     on_chunk: Optional[Callable[[str], None]] = None) -> GovernedResponse:
        """Run a text generation, streamed when `on_chunk` is given."""
        return self.run(self.text_context(prompt, options, on_chunk))

    def execute_embedding(self, text: str, options: GenerationOptions) -> EmbeddingResponse:
        return self.run(self.embedding_context(text, options))

    def text_context(self, prompt: str, options: GenerationOptions,
                     on_chunk: Optional[Callable[[str], None]] = None) -> ExecutionContext:
        if not prompt or not prompt.strip():
            raise InvalidRequest("prompt cannot be empty")
        route = self.router.select_model(
            options.feature,
            subscription_tier=options.subscription_tier,
            complexity=options.complexity,
            explicit_model=options.model,
        )
        return ExecutionContext(
            prompt=prompt,
            options=options,
            route=route,
            session_id=options.session_id or uuid.uuid4().hex,
            operation=OPERATION_STREAMING if on_chunk is not None else OPERATION_TEXT,
            on_chunk=on_chunk,
        )

    def embedding_context(self, text: str, options: GenerationOptions) -> ExecutionContext:
        if not text or not text.strip():
            raise InvalidRequest("text cannot be empty")
        model = options.model or self.config.embedding_model
        route = Route(primary=ModelChoice(model=model, provider=provider_for_model(model)))
        return ExecutionContext(
            prompt=text,
            options=options,
            route=route,
            session_id=options.session_id or uuid.uuid4().hex,
            operation=OPERATION_EMBEDDING,
        )

    def run(self, context: ExecutionContext):
        """Drive `context` to a terminal state.

        Raises:
            QuotaExceeded: When the quota check denied the call
            RequestCancelled: When the caller cancelled mid-flight
            VendorUnavailable: When the primary failed and no fallback exists
            AllVendorsFailed: When the primary and the fallback both failed
        """
        state = ExecutionState.CACHE_CHECK
        while state not in TERMINAL_STATES:
            context.trail.append(state)
            next_state = self._handlers[state](context)
            logger.debug("Request %s: %s -> %s", context.session_id, state.name, next_state.name)
            state = next_state
        context.trail.append(state)

        if state == ExecutionState.DENIED:
            decision = context.decision
            raise QuotaExceeded(
                decision.reason,
                remaining_cost=decision.remaining_cost,
                remaining_tokens=decision.remaining_tokens,
                user_id=context.options.user_id,
            )
        if state == ExecutionState.FAILED:
            raise context.error
        return context.response

    def _cache_key(self, context: ExecutionContext, model: str) -> str:
        options = context.options
        if context.embedding:
            return generate_cache_key(context.prompt, model, namespace=EMBEDDING_NAMESPACE)
        return generate_cache_key(
            context.prompt,
            model,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            system_prompt=options.system_prompt,
            namespace=TEXT_NAMESPACE,
        )

    def _check_cache(self, context: ExecutionContext) -> ExecutionState:
        if context.streaming or not context.options.use_cache or not self.cache.enabled:
            return ExecutionState.QUOTA_CHECK

        context.cache_key = self._cache_key(context, context.route.primary.model)
        entry = self.cache.get(context.cache_key)
        if entry is None:
            return ExecutionState.QUOTA_CHECK

        record = self._record_usage(
            context, entry.provider, entry.model, entry.usage, cached=True,
        )
        if context.embedding:
            context.response = EmbeddingResponse(
                vector=json.loads(entry.content),
                usage=entry.usage,
                cost=record.cost,
                model=entry.model,
                provider=entry.provider,
                cached=True,
                request_id=record.request_id,
            )
        else:
            context.response = GovernedResponse(
                content=entry.content,
                usage=entry.usage,
                cost=record.cost,
                model=entry.model,
                provider=entry.provider,
                cached=True,
                request_id=record.request_id,
            )
        return ExecutionState.DONE

    def _check_quota(self, context: ExecutionContext) -> ExecutionState:
        user_id = context.options.user_id
        if is_anonymous(user_id):
            return ExecutionState.EXECUTE_PRIMARY

        decision = self.quota.check_user_quota(user_id, context.options.estimated_cost)
        if not decision.allowed:
            context.decision = decision
            logger.warning(
                "AI request denied for user %s: %s (remaining $%.6f)",
                user_id, decision.reason, decision.remaining_cost,
            )
            return ExecutionState.DENIED
        return ExecutionState.EXECUTE_PRIMARY

    def _fallback_choice(self, context: ExecutionContext) -> Optional[ModelChoice]:
        if context.embedding:
            return None
        primary_provider = context.route.primary.provider
        pinned = context.options.fallback_model
        if pinned:
            choice = ModelChoice(model=pinned, provider=provider_for_model(pinned))
            if choice.provider != primary_provider and choice.provider in self.vendors:
                return choice
            logger.debug("Ignoring pinned fallback %s: same vendor as primary or not configured", pinned)
        for choice in context.route.fallbacks:
            if choice.provider != primary_provider and choice.provider in self.vendors:
                return choice
        return None

    def _execute_primary(self, context: ExecutionContext) -> ExecutionState:
        return self._attempt(context, context.route.primary, is_fallback=False)

    def _execute_fallback(self, context: ExecutionContext) -> ExecutionState:
        choice = self._fallback_choice(context)
        logger.warning(
            "Primary %s/%s unavailable, falling back to %s/%s",
            context.route.primary.provider, context.route.primary.model,
            choice.provider, choice.model,
        )
        return self._attempt(context, choice, is_fallback=True)

    def _attempt(self, context: ExecutionContext, choice: ModelChoice,
                 is_fallback: bool) -> ExecutionState:
        context.choice = choice
        options = context.options
        try:
            if options.cancel_event is not None and options.cancel_event.is_set():
                raise RequestCancelled("Request cancelled before the vendor call")
            context.result = self._call_vendor(context, choice)
            return ExecutionState.RECORD
        except RequestCancelled as e:
            partial = e.partial
            usage = partial.usage if partial is not None else TokenUsage.zero()
            logger.info("Request %s cancelled after %d tokens", context.session_id, usage.total_tokens)
            return self._fail(context, e, usage)
        except VendorUnavailable as e:
            context.attempts.append(e)
            can_fall_back = (
                not is_fallback
                and context.chunks_emitted == 0
                and self._fallback_choice(context) is not None
            )
            if can_fall_back:
                return ExecutionState.EXECUTE_FALLBACK
            error = e
            if is_fallback:
                logger.error(
                    "All vendors failed for request %s: %s",
                    context.session_id, "; ".join(str(a) for a in context.attempts),
                )
                error = AllVendorsFailed("All AI vendors failed", attempts=list(context.attempts))
            return self._fail(context, error, TokenUsage.zero())
        except Exception as e:
            return self._fail(context, e, TokenUsage.zero())

    def _call_vendor(self, context: ExecutionContext, choice: ModelChoice):
        vendor = self.vendors.get(choice.provider)
        if vendor is None:
            raise VendorUnavailable(
                f"No {choice.provider} client configured", provider=choice.provider, model=choice.model
            )

        options = context.options
        timeout = (options.timeout_ms or self.config.request_timeout_ms) / 1000.0
        if context.embedding:
            if not vendor.supports_embeddings:
                raise InvalidRequest(f"{choice.provider} does not support embeddings")
            return vendor.generate_embedding(context.prompt, choice.model, timeout=timeout)
        if context.streaming:
            return vendor.stream_text(
                context.prompt,
                choice.model,
                on_chunk=context.emit,
                system_prompt=options.system_prompt,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                timeout=timeout,
                cancel_event=options.cancel_event,
            )
        return vendor.generate_text(
            context.prompt,
            choice.model,
            system_prompt=options.system_prompt,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            timeout=timeout,
        )

    def _fail(self, context: ExecutionContext, error: BaseException,
              usage: TokenUsage) -> ExecutionState:
        context.error = error
        choice = context.choice or context.route.primary
        self._record_usage(
            context, choice.provider, choice.model, usage,
            success=False, error=str(error)[:MAX_ERROR_LENGTH] or type(error).__name__,
        )
        return ExecutionState.FAILED

    def _record_usage(self, context: ExecutionContext, provider: str, model: str,
                      usage: TokenUsage, cached: bool = False, success: bool = True,
                      error: Optional[str] = None) -> UsageRecord:
        options = context.options
        record = self.ledger.record_usage(
            session_id=context.session_id,
            provider=provider,
            model=model,
            usage=usage,
            user_id=options.user_id,
            operation=context.operation,
            cached=cached,
            success=success,
            error=error,
            feature=options.feature,
        )
        context.record = record
        return record

    def _record(self, context: ExecutionContext) -> ExecutionState:
        result = context.result
        # Priced on the requested model; vendors may answer with a dated alias
        record = self._record_usage(context, context.choice.provider, context.choice.model, result.usage)
        fallback_used = context.choice != context.route.primary
        if context.embedding:
            context.response = EmbeddingResponse(
                vector=result.vector,
                usage=result.usage,
                cost=record.cost,
                model=result.model,
                provider=result.provider,
                cached=False,
                request_id=record.request_id,
            )
        else:
            context.response = GovernedResponse(
                content=result.content,
                usage=result.usage,
                cost=record.cost,
                model=result.model,
                provider=result.provider,
                cached=False,
                request_id=record.request_id,
                finish_reason=result.finish_reason,
                fallback_used=fallback_used,
            )
        return ExecutionState.CACHE_WRITE

    def _write_cache(self, context: ExecutionContext) -> ExecutionState:
        options = context.options
        result = context.result
        ttl = options.cache_ttl or feature_cache_ttl(options.feature)
        # Cache under the model that actually answered
        key = self._cache_key(context, context.choice.model)

        if context.embedding:
            if options.use_cache and self.cache.enabled:
                self.cache.set(key, json.dumps(result.vector), result.usage,
                               context.choice.model, context.choice.provider, ttl_seconds=ttl)
            return ExecutionState.DONE

        cacheable = self.cache.is_cacheable(
            context.prompt,
            result.content,
            use_cache=options.use_cache,
            streaming=context.streaming,
            temperature=options.temperature,
        )
        if cacheable:
            self.cache.set(key, result.content, result.usage, context.choice.model,
                           context.choice.provider, ttl_seconds=ttl)
        return ExecutionState.DONE
