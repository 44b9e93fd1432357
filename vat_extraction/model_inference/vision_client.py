"""
Vision Extraction Client.

Sends a normalized document and a prompt template to the configured
vision backend and returns the raw response. The client owns:

    - template selection (weighted draw from the TemplateRegistry)
    - a hard per-call timeout, enforced by running each call on the
      client's own worker pool
    - retries with exponential backoff for retryable failures

It does not interpret the response text.

Usage:
    client = VisionExtractionClient(create_backend("openai"), TemplateRegistry.from_config())
    response = client.extract(normalized_document)
    client.shutdown()

Author: ML Engineering Team
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from config import get_config
from vat_extraction.input_handler.handler import NormalizedDocument
from vat_extraction.utils.logger import get_logger
from vat_extraction.utils.exceptions import ExternalAPIError, ModelTimeoutError

from .backends import VisionBackend
from .templates import PromptTemplate, TemplateRegistry

# Initialize module logger
logger = get_logger(__name__)


@dataclass
class VisionResponse:
    """
    Raw outcome of one successful vision extraction.

    Attributes:
        text: Raw model text.
        template_id: Template the request was built from.
        attempts: Number of attempts used (1 = first try succeeded).
        latency_ms: Wall time across all attempts.
        usage: Token usage of the successful attempt.
        model: Model identifier reported by the backend.
    """
    text: str
    template_id: str
    attempts: int = 1
    latency_ms: float = 0.0
    usage: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None


class VisionExtractionClient:
    """
    Retrying, time-bounded client for a VisionBackend.

    Attributes:
        backend: VisionBackend performing the requests.
        registry: TemplateRegistry used for template selection.
        timeout: Hard limit per attempt in seconds.
        max_attempts: Attempts before giving up (>= 1).
        backoff_base: Delay before the second attempt; doubles afterwards.
        backoff_max: Upper bound for a single delay.

    Example:
        >>> client = VisionExtractionClient(backend, registry, timeout=30)
        >>> response = client.extract(document)
        >>> response.attempts
        1
    """

    def __init__(
        self,
        backend: VisionBackend,
        registry: TemplateRegistry,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        max_workers: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.timeout = float(timeout or get_config("vision.timeout_seconds", 60))
        self.max_attempts = max(1, int(max_attempts or get_config("vision.retry.max_attempts", 3)))
        self.backoff_base = float(
            backoff_base if backoff_base is not None
            else get_config("vision.retry.backoff_base_seconds", 1.0)
        )
        self.backoff_max = float(
            backoff_max if backoff_max is not None
            else get_config("vision.retry.backoff_max_seconds", 30.0)
        )
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or get_config("vision.max_workers", 4),
            thread_name_prefix="vision-call",
        )
        self._closed = False

        logger.info(
            f"VisionExtractionClient initialized (backend={backend.name}, "
            f"timeout={self.timeout}s, max_attempts={self.max_attempts})"
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))

    def extract(
        self,
        document: NormalizedDocument,
        template: Optional[PromptTemplate] = None
    ) -> VisionResponse:
        """
        Run one vision extraction with retries.

        Args:
            document: Normalized document; all pages go in one request.
            template: Explicit template, otherwise one is drawn from the registry.

        Returns:
            VisionResponse with the raw model text.

        Raises:
            ExternalAPIError: When a non-retryable error occurs or every
                              attempt failed (attempts recorded on the error).
        """
        if self._closed:
            raise ExternalAPIError("Vision client is shut down", {"backend": self.backend.name})

        template = template or self.registry.select()
        started = time.monotonic()
        last_error: Optional[ExternalAPIError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self._call_with_timeout(template, document)
            except ExternalAPIError as e:
                e.attempts = attempt
                last_error = e
                if not e.retryable:
                    logger.error(f"Vision call failed (non-retryable): {e}")
                    raise
                if attempt < self.max_attempts:
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        f"Vision attempt {attempt}/{self.max_attempts} failed: {e.message}. "
                        f"Retrying in {delay:.1f}s"
                    )
                    self._sleep(delay)
                continue

            latency_ms = (time.monotonic() - started) * 1000.0
            logger.info(
                f"Vision extraction done (template={template.id}, attempts={attempt}, "
                f"latency={latency_ms:.0f}ms)"
            )
            return VisionResponse(
                text=response.text,
                template_id=template.id,
                attempts=attempt,
                latency_ms=latency_ms,
                usage=dict(response.usage),
                model=response.model,
            )

        logger.error(f"Vision extraction gave up after {self.max_attempts} attempts")
        raise ExternalAPIError(
            f"Vision model unavailable after {self.max_attempts} attempts",
            {
                "backend": self.backend.name,
                "template_id": template.id,
                "last_error": last_error.message if last_error else None,
            },
            retryable=False,
            attempts=self.max_attempts,
        )

    def _call_with_timeout(self, template: PromptTemplate, document: NormalizedDocument):
        future = self._executor.submit(
            self.backend.complete, template, document.pages, self.timeout
        )
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            # The worker keeps running; its result is discarded
            future.cancel()
            raise ModelTimeoutError(self.timeout)
        except ExternalAPIError:
            raise
        except Exception as e:
            raise ExternalAPIError(
                f"Unexpected vision backend failure: {e}",
                {"backend": self.backend.name, "error_type": type(e).__name__},
                retryable=True,
            )

    def shutdown(self, wait: bool = False) -> None:
        """Stop accepting calls and release the worker pool and backend."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait)
        self.backend.close()
        logger.info("VisionExtractionClient shut down")
