"""Provider implementations."""

from showforge.providers.base import GenerationProvider, LaunchReceipt, LaunchRequest, PromptAdjuster, PromptAdjustment, PromptAdjustmentRequest, ProviderStatus
from showforge.providers.prompt_adjuster import OpenAIPromptAdjuster
from showforge.providers.replicate import ReplicateProvider

__all__ = ["GenerationProvider", "LaunchReceipt", "LaunchRequest", "PromptAdjuster", "PromptAdjustment", "PromptAdjustmentRequest", "ProviderStatus", "OpenAIPromptAdjuster", "ReplicateProvider"]
