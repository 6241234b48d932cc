"""
Unit tests for the GovernedAIService facade.

The facade is wired with scripted vendors and in-memory stores; the
SQLite wiring is exercised through from_config with a temporary database.
"""

import logging
import os
import tempfile
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from ai_governor.config.loader import GovernorConfig
from ai_governor.core.errors import ConfigurationError, QuotaExceeded
from ai_governor.sdk import GenerationOptions, GovernedAIService
from ai_governor.storage.repository import SQLiteUsageRepository
from ai_governor.storage.store import SQLiteStore

from conftest import LONG_ANSWER, FakeClock, FakeVendor

PROMPT = "Describe the responsibilities of a backend engineer."


class TestServiceWiring:

    def setup_method(self):
        self.clock = FakeClock()
        self.anthropic = FakeVendor("anthropic")
        self.openai = FakeVendor("openai", supports_embeddings=True)
        self.service = GovernedAIService(
            GovernorConfig(user_daily_cost_limit_usd=0.002, daily_budget_usd=0.001),
            {"anthropic": self.anthropic, "openai": self.openai},
            clock=self.clock,
        )

    def test_requires_a_vendor(self):
        with pytest.raises(ConfigurationError):
            GovernedAIService(GovernorConfig(), {})

    def test_generate_text(self):
        response = self.service.generate_text(PROMPT, GenerationOptions(user_id="alice"))
        assert response.content == LONG_ANSWER
        assert response.provider == "anthropic"

    def test_stream_text(self):
        chunks = []
        response = self.service.stream_text(PROMPT, None, chunks.append)
        assert "".join(chunks) == LONG_ANSWER.replace(" ", "")
        assert response.cached is False

    def test_generate_embedding(self):
        response = self.service.generate_embedding("Python developer")
        assert response.vector == [0.1, 0.2, 0.3]
        assert response.provider == "openai"

    def test_quota_enforced_across_requests(self):
        options = GenerationOptions(user_id="alice", use_cache=False, estimated_cost=0.001)
        self.service.generate_text(PROMPT, options)

        eligibility = self.service.can_make_request("alice")
        assert eligibility.can_make is False
        assert eligibility.reason == "Daily cost limit exceeded"
        with pytest.raises(QuotaExceeded):
            self.service.generate_text(PROMPT, options)
        assert len(self.anthropic.calls) == 1

    def test_anonymous_always_eligible(self):
        assert self.service.can_make_request(None).can_make
        assert self.service.can_make_request("anonymous-user").can_make

    def test_budget_alert_raised_from_ledger(self, caplog):
        received = []
        self.service.budget.add_handler(received.append)
        with caplog.at_level(logging.WARNING, logger="ai_governor.core.budget"):
            self.service.generate_text(PROMPT, GenerationOptions(use_cache=False))

        # $0.00105 against a $0.001 budget crosses every threshold at once
        assert len(received) == 3
        assert "Budget alert" in caplog.text

    def test_user_usage_stats(self):
        self.service.generate_text(PROMPT, GenerationOptions(user_id="alice"))
        self.clock.advance(days=1)
        self.service.generate_text(PROMPT + " Again.", GenerationOptions(user_id="alice"))

        stats = self.service.get_user_usage_stats("alice")
        assert stats.today.request_count == 1
        assert stats.month.request_count == 2
        assert stats.quotas.current_daily_tokens == 150
        assert stats.quotas.daily_cost_limit == 0.002

    def test_cache_management(self):
        self.service.generate_text(PROMPT)
        self.service.generate_text(PROMPT)

        stats = self.service.get_cache_stats()
        assert stats.hits == 1
        assert stats.keys == 1

        savings = self.service.get_cache_savings()
        assert savings.tokens_saved == 150
        assert savings.cost_saved == Decimal("0.00105")
        assert savings.cache_hit_rate == 0.5

        assert self.service.clear_expired_cache() == 0
        assert self.service.clear_cache() == 1
        assert self.service.get_cache_stats().keys == 0

    def test_warmup_cache(self):
        queries = [
            {"prompt": PROMPT},
            {"prompt": "Summarize a resume for a data analyst role.", "feature": "resume_parsing"},
        ]
        assert self.service.warmup_cache(queries) == 2
        assert self.service.warmup_cache(queries) == 0
        assert self.anthropic.calls == ["claude-sonnet-4-5-20250929"]
        assert self.openai.calls == ["gpt-4o-mini"]

        # Warmed entries serve real requests
        assert self.service.generate_text(PROMPT, GenerationOptions(user_id="bob")).cached
        assert all(r.user_id == "system" for r in self.service.repository.fetch()[:2])

    def test_providers(self):
        assert self.service.available_providers() == ["anthropic", "openai"]
        assert self.service.is_provider_available("openai")
        assert not self.service.is_provider_available("mistral")


class TestFromConfig:
    """Test building the service from environment credentials."""

    def test_no_credentials(self):
        with pytest.raises(ConfigurationError, match="No AI vendor credentials"):
            GovernedAIService.from_config(environ={})

    def test_only_configured_vendors(self):
        mock_anthropic = Mock(provider="anthropic")
        mock_openai = Mock(provider="openai")
        config = GovernorConfig(request_timeout_ms=5000, max_retries=1)

        with patch("ai_governor.sdk.service.VENDOR_ENVIRONMENT", (
            (mock_anthropic, "ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL"),
            (mock_openai, "OPENAI_API_KEY", "OPENAI_BASE_URL"),
        )):
            service = GovernedAIService.from_config(config, environ={"OPENAI_API_KEY": "sk-test"})

        assert service.available_providers() == ["openai"]
        mock_anthropic.assert_not_called()
        mock_openai.assert_called_once_with(
            api_key="sk-test", base_url=None, timeout_seconds=5.0, max_retries=1,
        )

    def test_sqlite_wiring(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "governor.db")
            service = GovernedAIService.from_config(
                environ={"ANTHROPIC_API_KEY": "test-key"}, db_path=db_path,
            )
            assert isinstance(service.store, SQLiteStore)
            assert isinstance(service.repository, SQLiteUsageRepository)
            assert service.available_providers() == ["anthropic"]

    def test_zero_retries_reach_the_vendor(self):
        mock_openai = Mock(provider="openai")
        config = GovernorConfig.from_mapping({"requestTimeoutMs": 2000, "maxRetries": 0})

        with patch("ai_governor.sdk.service.VENDOR_ENVIRONMENT", (
            (mock_openai, "OPENAI_API_KEY", "OPENAI_BASE_URL"),
        )):
            GovernedAIService.from_config(config, environ={"OPENAI_API_KEY": "sk-test"})

        # One transport try per attempt, so the timeout bounds time-to-fallback
        mock_openai.assert_called_once_with(
            api_key="sk-test", base_url=None, timeout_seconds=2.0, max_retries=0,
        )
