"""Analysis backend factory.

Resolves model IDs to the appropriate backend implementation.
"""

import logging
import os
from typing import Optional, Union

from src.llm.backends import AnthropicVisionBackend, SimulatedBackend

logger = logging.getLogger(__name__)

ANALYSIS_MODEL = os.environ.get("ANALYSIS_MODEL", "claude-sonnet-4-6")


def get_analysis_client(
    model_id: Optional[str] = None,
) -> Union[AnthropicVisionBackend, SimulatedBackend]:
    """Get the analysis backend for a model ID.

    Args:
        model_id: e.g. 'claude-sonnet-4-6' or 'simulated'.
                  Defaults to ANALYSIS_MODEL.

    Returns:
        Backend instance. Claude models fall back to the simulated backend
        when ANTHROPIC_API_KEY is not set.

    Raises:
        ValueError: If model_id is not recognized
    """
    model_id = model_id or ANALYSIS_MODEL

    if model_id == "simulated":
        return SimulatedBackend()
    if model_id.startswith("claude-"):
        if not os.environ.get("ANTHROPIC_API_KEY"):
            logger.warning(
                f"ANTHROPIC_API_KEY not set, using simulated backend instead of {model_id}"
            )
            return SimulatedBackend()
        return AnthropicVisionBackend(model_id=model_id)

    raise ValueError(
        f"Unknown model: '{model_id}'. "
        f"Expected 'simulated' or a model ID starting with 'claude-'."
    )
