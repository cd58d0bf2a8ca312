"""Vision analysis backends.

Every backend implements the AnalysisClient protocol: given an image
reference, a prompt, and the expected answer kind, return an
AnalysisResult. Ordinary per-image failures (HTTP errors, timeouts,
rate limits, empty answers) come back as `success=False` results rather
than exceptions, so one bad image never sinks a stage.

Backends:
- AnthropicVisionBackend: Claude vision models via the Messages API,
  with retry and exponential backoff for transient errors.
- SimulatedBackend: deterministic placeholder answers per prompt kind,
  used for local runs and when no API key is configured.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from src.executor.schemas import ImageRef, PromptKind
from src.llm.client import (
    build_image_url,
    frame_prompt,
    get_anthropic_client,
    normalize_response,
)

logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """Normalized answer from any analysis backend."""

    success: bool
    response: str = ""
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0


@runtime_checkable
class AnalysisClient(Protocol):
    """Protocol for vision analysis backends."""

    @property
    def model_id(self) -> str: ...

    def analyze(
        self,
        image: ImageRef,
        prompt_text: str,
        kind: PromptKind,
    ) -> AnalysisResult: ...


SYSTEM_PROMPT = (
    "You analyze a single image and answer the user's question about it. "
    "Answer only from what is visible in the image and follow the requested "
    "answer format exactly."
)

RETRY_DELAYS = [1, 2, 4]  # seconds between attempts
MAX_ATTEMPTS = len(RETRY_DELAYS) + 1


class AnthropicVisionBackend:
    """Anthropic Claude vision backend.

    Images are passed by URL (see build_image_url). Authentication,
    permission, and bad-request errors are not retried.
    """

    def __init__(
        self,
        model_id: str = "claude-sonnet-4-6",
        max_tokens: int = 1024,
        client=None,
    ):
        self._model_id = model_id
        self._max_tokens = max_tokens
        self._client = client

    @property
    def model_id(self) -> str:
        return self._model_id

    def _get_client(self):
        if self._client is None:
            import httpx

            self._client = get_anthropic_client(
                timeout=httpx.Timeout(connect=30.0, read=120.0, write=60.0, pool=30.0)
            )
            if self._client is None:
                raise RuntimeError(
                    "Analysis service unavailable. Set ANTHROPIC_API_KEY environment variable."
                )
        return self._client

    def analyze(
        self,
        image: ImageRef,
        prompt_text: str,
        kind: PromptKind,
    ) -> AnalysisResult:
        import anthropic

        label = f"{self._model_id}:{image.image_id}"
        start_time = time.time()

        try:
            image_url = build_image_url(image)
            client = self._get_client()
        except (ValueError, RuntimeError) as e:
            logger.warning(f"[{label}] Cannot analyze image: {e}")
            return AnalysisResult(
                success=False,
                error=str(e),
                metadata={"model": self._model_id, "prompt_kind": kind.value},
            )

        kwargs: dict[str, Any] = {
            "model": self._model_id,
            "max_tokens": self._max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{
                "role": "user",
                "content": [
                    {"type": "image", "source": {"type": "url", "url": image_url}},
                    {"type": "text", "text": frame_prompt(prompt_text, kind)},
                ],
            }],
        }

        last_error: Optional[Exception] = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            if attempt > 1:
                delay = RETRY_DELAYS[min(attempt - 2, len(RETRY_DELAYS) - 1)]
                logger.info(
                    f"[{label}] Retry {attempt}/{MAX_ATTEMPTS} after {delay}s "
                    f"(last error: {last_error})"
                )
                time.sleep(delay)

            try:
                response = client.messages.create(**kwargs)
            except (
                anthropic.AuthenticationError,
                anthropic.PermissionDeniedError,
                anthropic.BadRequestError,
            ) as e:
                last_error = e
                break
            except anthropic.APIError as e:
                last_error = e
                continue

            raw_text = "".join(
                block.text for block in response.content if hasattr(block, "text")
            )
            duration_ms = int((time.time() - start_time) * 1000)

            if not raw_text.strip():
                last_error = RuntimeError(f"Empty response from {self._model_id}")
                continue

            return AnalysisResult(
                success=True,
                response=normalize_response(raw_text, kind),
                metadata={
                    "model": self._model_id,
                    "prompt_kind": kind.value,
                    "raw_response": raw_text,
                    "input_tokens": response.usage.input_tokens,
                    "output_tokens": response.usage.output_tokens,
                    "attempts": attempt,
                },
                duration_ms=duration_ms,
            )

        duration_ms = int((time.time() - start_time) * 1000)
        logger.warning(f"[{label}] Analysis failed: {last_error}")
        return AnalysisResult(
            success=False,
            error=str(last_error),
            metadata={"model": self._model_id, "prompt_kind": kind.value},
            duration_ms=duration_ms,
        )


class SimulatedBackend:
    """Deterministic placeholder answers, no network access."""

    def __init__(self, model_id: str = "simulated", delay_seconds: float = 0.0):
        self._model_id = model_id
        self._delay_seconds = delay_seconds

    @property
    def model_id(self) -> str:
        return self._model_id

    def analyze(
        self,
        image: ImageRef,
        prompt_text: str,
        kind: PromptKind,
    ) -> AnalysisResult:
        if self._delay_seconds:
            time.sleep(self._delay_seconds)

        if kind == PromptKind.BOOLEAN:
            response = "true"
        elif kind == PromptKind.KEYWORDS:
            response = "test, image, analysis, placeholder"
        else:
            response = (
                f'This is a simulated analysis of image {image.file_name or image.image_id} '
                f'based on the prompt: "{prompt_text}".'
            )

        return AnalysisResult(
            success=True,
            response=response,
            metadata={"model": self._model_id, "prompt_kind": kind.value, "simulated": True},
            duration_ms=int(self._delay_seconds * 1000),
        )
