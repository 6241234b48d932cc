"""
Model routing.

Picks a primary model and an ordered fallback list from static rules:
feature, subscription tier and declared complexity. Pure lookup, no I/O.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from .errors import InvalidRequest

PROVIDER_ANTHROPIC = "anthropic"
PROVIDER_OPENAI = "openai"
PROVIDERS = (PROVIDER_ANTHROPIC, PROVIDER_OPENAI)

STANDARD_MODEL = "gpt-4o"

# Used for a vendor when none of the configured models belongs to it
BUILTIN_VENDOR_DEFAULTS = {
    PROVIDER_ANTHROPIC: "claude-sonnet-4-5-20250929",
    PROVIDER_OPENAI: "gpt-4o-mini",
}


class Feature(Enum):
    """AI-powered features of the platform."""
    JOB_MATCHING = "job_matching"
    RESUME_PARSING = "resume_parsing"
    COVER_LETTER_GENERATION = "cover_letter_generation"
    RESUME_OPTIMIZATION = "resume_optimization"
    INTERVIEW_PREPARATION = "interview_preparation"
    CAREER_INSIGHTS = "career_insights"
    SALARY_ANALYSIS = "salary_analysis"


class SubscriptionTier(Enum):
    FREE = "free"
    PREMIUM = "premium"


class Complexity(Enum):
    SIMPLE = "simple"
    COMPLEX = "complex"


# Features that need the strong model even when the caller says "simple"
FEATURE_DEFAULT_COMPLEXITY: Dict[Feature, Complexity] = {
    Feature.JOB_MATCHING: Complexity.SIMPLE,
    Feature.RESUME_PARSING: Complexity.SIMPLE,
    Feature.COVER_LETTER_GENERATION: Complexity.SIMPLE,
    Feature.RESUME_OPTIMIZATION: Complexity.SIMPLE,
    Feature.INTERVIEW_PREPARATION: Complexity.SIMPLE,
    Feature.CAREER_INSIGHTS: Complexity.COMPLEX,
    Feature.SALARY_ANALYSIS: Complexity.SIMPLE,
}

# Default cache lifetime per feature, in seconds
FEATURE_CACHE_TTL: Dict[Feature, int] = {
    Feature.JOB_MATCHING: 3600,
    Feature.RESUME_PARSING: 86400,
    Feature.COVER_LETTER_GENERATION: 1800,
    Feature.RESUME_OPTIMIZATION: 1800,
    Feature.INTERVIEW_PREPARATION: 1800,
    Feature.CAREER_INSIGHTS: 7200,
    Feature.SALARY_ANALYSIS: 43200,
}


@dataclass(frozen=True)
class ModelChoice:
    model: str
    provider: str


@dataclass(frozen=True)
class Route:
    """Routing decision: try `primary`, then each of `fallbacks` in order."""
    primary: ModelChoice
    fallbacks: Tuple[ModelChoice, ...] = ()


def provider_for_model(model: str) -> str:
    """Map a model identifier to the vendor that serves it.

    Raises:
        InvalidRequest: If no vendor serves the model
    """
    name = (model or "").strip().lower()
    if name.startswith("claude"):
        return PROVIDER_ANTHROPIC
    if name.startswith(("gpt", "o1", "o3", "o4", "text-embedding")):
        return PROVIDER_OPENAI
    raise InvalidRequest(f"Unknown model: {model}")


def parse_feature(feature) -> Optional[Feature]:
    """Return the Feature for a name or enum member, or None if unknown."""
    if isinstance(feature, Feature):
        return feature
    try:
        return Feature(feature)
    except ValueError:
        return None


def feature_cache_ttl(feature) -> Optional[int]:
    parsed = parse_feature(feature)
    return FEATURE_CACHE_TTL.get(parsed) if parsed else None


class ModelRouter:
    """Static routing rules.

    - an explicit model always wins
    - an unknown feature gets the global default model
    - complex work goes to the strong model (the default model's vendor)
    - premium simple work gets the standard model
    - free simple work gets the economical model
    The fallback list holds the default model of every other vendor.
    """

    def __init__(self, default_model: str, economical_model: str,
                 standard_model: str = STANDARD_MODEL):
        self.default_model = default_model
        self.economical_model = economical_model
        self.standard_model = standard_model
        self._vendor_defaults = self._build_vendor_defaults()

    def _build_vendor_defaults(self) -> Dict[str, str]:
        defaults: Dict[str, str] = {}
        for model in (self.default_model, self.economical_model, self.standard_model):
            defaults.setdefault(provider_for_model(model), model)
        for provider, model in BUILTIN_VENDOR_DEFAULTS.items():
            defaults.setdefault(provider, model)
        return defaults

    def default_model_for(self, provider: str) -> str:
        """Default model of `provider`, used when it serves as the fallback."""
        try:
            return self._vendor_defaults[provider]
        except KeyError:
            raise InvalidRequest(f"No default model configured for provider {provider}")

    def select_model(
        self,
        feature,
        subscription_tier=SubscriptionTier.FREE,
        complexity=None,
        explicit_model: Optional[str] = None,
    ) -> Route:
        """Choose the primary model and its fallbacks.

        Args:
            feature: Feature name or Feature member
            subscription_tier: "free"/"premium" or SubscriptionTier member
            complexity: "simple"/"complex", Complexity member, or None for
                the feature's default
            explicit_model: Caller-pinned model; always wins

        Returns:
            Route with the primary choice and ordered fallbacks
        """
        if explicit_model:
            model = explicit_model
        else:
            model = self._route(feature, subscription_tier, complexity)

        primary = ModelChoice(model=model, provider=provider_for_model(model))
        fallbacks = tuple(
            ModelChoice(model=default, provider=provider)
            for provider, default in sorted(self._vendor_defaults.items())
            if provider != primary.provider
        )
        return Route(primary=primary, fallbacks=fallbacks)

    def _route(self, feature, subscription_tier, complexity) -> str:
        parsed = parse_feature(feature)
        if parsed is None:
            return self.default_model

        try:
            tier = SubscriptionTier(subscription_tier)
            level = Complexity(complexity) if complexity is not None else Complexity.SIMPLE
        except ValueError as e:
            raise InvalidRequest(str(e)) from e
        if FEATURE_DEFAULT_COMPLEXITY[parsed] == Complexity.COMPLEX:
            level = Complexity.COMPLEX

        if level == Complexity.COMPLEX:
            return self.default_model
        if tier == SubscriptionTier.PREMIUM:
            return self.standard_model
        return self.economical_model
