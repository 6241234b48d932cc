"""
SDK for AI request governance.

Provides the governed service facade and the vendor clients it drives.
"""

from ..core.executor import EmbeddingResponse, GenerationOptions, GovernedResponse
from .anthropic_client import AnthropicVendor
from .base import EmbeddingResult, TextResult, VendorClient
from .openai_client import OpenAIVendor
from .service import GovernedAIService, RequestEligibility, UserUsageStats

__all__ = [
    "AnthropicVendor",
    "EmbeddingResponse",
    "EmbeddingResult",
    "GenerationOptions",
    "GovernedAIService",
    "GovernedResponse",
    "OpenAIVendor",
    "RequestEligibility",
    "TextResult",
    "UserUsageStats",
    "VendorClient",
]
