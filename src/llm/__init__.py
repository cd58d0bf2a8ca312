"""Vision analysis capability used by the job execution engine.

Provides the AnalysisClient protocol, the Anthropic and simulated
backends, and the factory that picks one from a model ID.
"""

from src.llm.client import (
    build_image_url,
    frame_prompt,
    get_anthropic_client,
    normalize_response,
)
from src.llm.backends import (
    AnalysisClient,
    AnalysisResult,
    AnthropicVisionBackend,
    SimulatedBackend,
)
from src.llm.factory import get_analysis_client

__all__ = [
    "build_image_url",
    "frame_prompt",
    "get_anthropic_client",
    "normalize_response",
    "AnalysisClient",
    "AnalysisResult",
    "AnthropicVisionBackend",
    "SimulatedBackend",
    "get_analysis_client",
]
