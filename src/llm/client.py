"""Shared helpers for the vision analysis backends.

- Anthropic client creation (returns None when no API key is configured)
- Image URL building from storage paths
- Prompt framing per expected answer kind
- Response normalisation per expected answer kind
"""

import logging
import os
import re
from typing import Optional

from src.executor.schemas import ImageRef, PromptKind

logger = logging.getLogger(__name__)

IMAGE_BUCKET_NAME = os.environ.get("IMAGE_BUCKET_NAME", "")
STORAGE_BASE_URL = "https://storage.googleapis.com"

_KIND_INSTRUCTIONS = {
    PromptKind.BOOLEAN: 'Please respond with only "true" or "false".',
    PromptKind.KEYWORDS: "Please respond with a comma-separated list of relevant keywords.",
    PromptKind.DESCRIPTIVE: "Please provide a detailed description.",
}

_TRUE_WORDS = re.compile(r"\b(true|yes)\b")
_FALSE_WORDS = re.compile(r"\b(false|no)\b")
_NEGATED_TRUE = re.compile(r"\bnot\s+(true|yes)\b")
_NEGATED_FALSE = re.compile(r"\bnot\s+false\b")


def get_anthropic_client(timeout=None):
    """Get Anthropic client if API key is available.

    Returns None if ANTHROPIC_API_KEY is not set.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None

    import anthropic

    if timeout is not None:
        return anthropic.Anthropic(api_key=api_key, timeout=timeout)
    return anthropic.Anthropic(api_key=api_key)


def build_image_url(image: ImageRef, bucket: Optional[str] = None) -> str:
    """Public URL for an image reference.

    Absolute http(s) URLs pass through unchanged; anything else is treated
    as an object path inside the image bucket.
    """
    path = image.storage_path or ""
    if path.startswith(("http://", "https://")):
        return path

    bucket = bucket if bucket is not None else IMAGE_BUCKET_NAME
    if not bucket:
        raise ValueError(
            f"Cannot build URL for image {image.image_id}: IMAGE_BUCKET_NAME is not set"
        )
    return f"{STORAGE_BASE_URL}/{bucket}/{path.lstrip('/')}"


def frame_prompt(prompt_text: str, kind: PromptKind) -> str:
    """Append the answer-format instruction for the prompt kind."""
    instruction = _KIND_INSTRUCTIONS.get(kind)
    if not instruction:
        return prompt_text
    return f"{prompt_text}\n\n{instruction}"


def normalize_response(raw_text: str, kind: PromptKind) -> str:
    """Normalise a model answer for storage.

    Boolean answers collapse to "true"/"false" when the model says so
    (yes/no accepted, "not true" reads as false); an unclear or mixed
    answer is kept verbatim so the true_only/false_only filters drop it.
    Keyword lists are re-joined with ", " after trimming.
    """
    text = raw_text.strip()

    if kind == PromptKind.BOOLEAN:
        lower = text.lower()
        says_false = bool(_NEGATED_TRUE.search(lower))
        says_true = bool(_NEGATED_FALSE.search(lower))
        plain = _NEGATED_FALSE.sub(" ", _NEGATED_TRUE.sub(" ", lower))
        says_true = says_true or bool(_TRUE_WORDS.search(plain))
        says_false = says_false or bool(_FALSE_WORDS.search(plain))
        if says_true and not says_false:
            return "true"
        if says_false and not says_true:
            return "false"
        return text

    if kind == PromptKind.KEYWORDS:
        keywords = [k.strip() for k in text.split(",")]
        return ", ".join(k for k in keywords if k)

    return text
