"""
Governed AI service.

The single entry point feature code uses. Wires the router, cache, quota
guard, ledger and budget monitor around the configured vendors. Build one
instance at process start and pass it to callers.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from ..config.loader import GovernorConfig
from ..core.budget import BudgetMonitor
from ..core.cache import CacheStats, ResponseCache
from ..core.errors import ConfigurationError
from ..core.executor import (
    EmbeddingResponse,
    GenerationOptions,
    GovernedResponse,
    RequestExecutor,
)
from ..core.ledger import CacheSavings, CostLedger, DailyUsage
from ..core.pricing import PRICING_CATALOG, PricingCatalog
from ..core.quota import QuotaGuard, is_anonymous
from ..core.routing import ModelRouter
from ..storage.models import UserQuota, utcnow
from ..storage.repository import (
    InMemoryUsageRepository,
    SQLiteUsageRepository,
    UsageRepository,
)
from ..storage.store import InMemoryStore, KeyValueStore, SQLiteStore
from .anthropic_client import AnthropicVendor
from .base import ChunkCallback, VendorClient
from .openai_client import OpenAIVendor

logger = logging.getLogger(__name__)

# Vendor class, API key variable, base URL variable
VENDOR_ENVIRONMENT = (
    (AnthropicVendor, "ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL"),
    (OpenAIVendor, "OPENAI_API_KEY", "OPENAI_BASE_URL"),
)


@dataclass(frozen=True)
class UserUsageStats:
    today: DailyUsage
    month: DailyUsage
    quotas: UserQuota


@dataclass(frozen=True)
class RequestEligibility:
    can_make: bool
    reason: Optional[str] = None


class GovernedAIService:
    """Facade over the governance pipeline."""

    def __init__(
        self,
        config: GovernorConfig,
        vendors: Dict[str, VendorClient],
        store: Optional[KeyValueStore] = None,
        repository: Optional[UsageRepository] = None,
        router: Optional[ModelRouter] = None,
        catalog: PricingCatalog = PRICING_CATALOG,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not vendors:
            raise ConfigurationError("At least one AI vendor must be configured")

        self.config = config
        self.vendors = dict(vendors)
        self._clock = clock
        self.store = store or InMemoryStore(clock=clock)
        self.repository = repository or InMemoryUsageRepository()
        self.router = router or ModelRouter(config.default_model, config.fallback_model)

        self.ledger = CostLedger(self.repository, catalog=catalog, clock=clock)
        self.quota = QuotaGuard(
            self.store,
            daily_cost_limit=config.user_daily_cost_limit_usd,
            daily_token_limit=config.effective_user_daily_token_limit,
            clock=clock,
        )
        self.budget = BudgetMonitor(
            self.ledger,
            daily_budget_usd=config.daily_budget_usd,
            thresholds=config.budget_alert_thresholds,
            enabled=config.enable_cost_alerts,
            clock=clock,
        )
        self.cache = ResponseCache(
            self.store,
            default_ttl_seconds=config.cache_default_ttl_seconds,
            enabled=config.cache_enabled,
            clock=clock,
        )
        self.ledger.add_listener(self.quota.on_usage_recorded)
        self.ledger.add_listener(self.budget.check)

        self.executor = RequestExecutor(
            vendors=self.vendors,
            router=self.router,
            cache=self.cache,
            ledger=self.ledger,
            quota=self.quota,
            config=config,
        )
        logger.info("AI governance initialized with providers: %s", ", ".join(sorted(self.vendors)))

    @classmethod
    def from_config(cls, config: Optional[GovernorConfig] = None, db_path: Optional[str] = None,
                    environ: Optional[Mapping[str, str]] = None) -> "GovernedAIService":
        """Build a service with vendors for every credential found in the environment.

        Args:
            config: Governance settings; defaults to GovernorConfig()
            db_path: SQLite file for the ledger and store; in-memory if omitted
            environ: Environment mapping; defaults to os.environ

        Raises:
            ConfigurationError: If no vendor credential is configured
        """
        config = config or GovernorConfig()
        environ = os.environ if environ is None else environ

        vendors: Dict[str, VendorClient] = {}
        for vendor_cls, key_var, url_var in VENDOR_ENVIRONMENT:
            api_key = environ.get(key_var)
            if not api_key:
                continue
            vendors[vendor_cls.provider] = vendor_cls(
                api_key=api_key,
                base_url=environ.get(url_var) or None,
                timeout_seconds=config.request_timeout_seconds,
                max_retries=config.max_retries,
            )
        if not vendors:
            raise ConfigurationError(
                "No AI vendor credentials found: set ANTHROPIC_API_KEY or OPENAI_API_KEY"
            )

        store = repository = None
        if db_path:
            store = SQLiteStore(db_path)
            repository = SQLiteUsageRepository(db_path)
        return cls(config, vendors, store=store, repository=repository)

    def generate_text(self, prompt: str,
                      options: Optional[GenerationOptions] = None) -> GovernedResponse:
        return self.executor.execute_text(prompt, options or GenerationOptions())

    def stream_text(self, prompt: str, options: Optional[GenerationOptions],
                    on_chunk: ChunkCallback) -> GovernedResponse:
        """Stream a completion; fragments go to `on_chunk` as they arrive.

        Streamed responses are never served from or written to the cache.
        """
        return self.executor.execute_text(prompt, options or GenerationOptions(), on_chunk=on_chunk)

    def generate_embedding(self, text: str,
                           options: Optional[GenerationOptions] = None) -> EmbeddingResponse:
        return self.executor.execute_embedding(text, options or GenerationOptions())

    def get_user_usage_stats(self, user_id: str) -> UserUsageStats:
        now = self._clock()
        start_of_day = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
        start_of_month = start_of_day.replace(day=1)
        return UserUsageStats(
            today=self.ledger.get_user_usage_since(user_id, start_of_day),
            month=self.ledger.get_user_usage_since(user_id, start_of_month),
            quotas=self.quota.get_quota(user_id),
        )

    def can_make_request(self, user_id: Optional[str]) -> RequestEligibility:
        if is_anonymous(user_id):
            return RequestEligibility(can_make=True)
        decision = self.quota.check_user_quota(user_id)
        return RequestEligibility(can_make=decision.allowed, reason=decision.reason)

    def get_cache_stats(self) -> CacheStats:
        return self.cache.get_stats()

    def get_cache_savings(self, days: int = 7) -> CacheSavings:
        return self.ledger.get_cache_savings(days)

    def clear_cache(self) -> int:
        return self.cache.clear()

    def clear_expired_cache(self, older_than_seconds: Optional[int] = None) -> int:
        return self.cache.clear_expired(older_than_seconds)

    def warmup_cache(self, common_queries: Iterable[dict]) -> int:
        """Precompute answers for common prompts as the system user.

        Each query holds a `prompt` plus any GenerationOptions fields.
        """
        resolved = []
        for query in common_queries:
            query = dict(query)
            options = GenerationOptions(**{k: v for k, v in query.items() if k != "prompt"})
            route = self.router.select_model(
                options.feature,
                subscription_tier=options.subscription_tier,
                complexity=options.complexity,
                explicit_model=options.model,
            )
            resolved.append({
                "prompt": query["prompt"],
                "model": route.primary.model,
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
                "system_prompt": options.system_prompt,
                "feature": options.feature,
            })

        def generate(prompt, model, temperature, max_tokens, system_prompt, feature):
            return self.generate_text(prompt, GenerationOptions(
                user_id="system",
                feature=feature,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                system_prompt=system_prompt,
            ))

        return self.cache.warmup(resolved, generate)

    def available_providers(self) -> List[str]:
        return sorted(self.vendors)

    def is_provider_available(self, provider: str) -> bool:
        return provider in self.vendors
