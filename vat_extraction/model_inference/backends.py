"""
Vision Model Backends.

This module defines the contract between the pipeline and an external
vision-capable model, and two implementations:

    - OpenAIVisionBackend: OpenAI-compatible chat completions endpoint,
      pages sent as base64 PNG data URLs (or text parts for text-only
      pages)
    - LayoutLMBackend: local Hugging Face document-question-answering
      pipeline (impira/layoutlm-document-qa by default)

A backend performs exactly one request per call and maps transport
failures onto ExternalAPIError with a retryable flag. Retries, timeouts
and template selection belong to VisionExtractionClient.

Author: ML Engineering Team
"""

import base64
import io
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import openai
from PIL import Image

from config import get_config
from vat_extraction.input_handler.handler import PageContent
from vat_extraction.utils.logger import get_logger
from vat_extraction.utils.exceptions import ExternalAPIError, ModelLoadError

from .templates import PromptTemplate

# Initialize module logger
logger = get_logger(__name__)


@dataclass
class ModelResponse:
    """
    Raw model output.

    Attributes:
        text: Response text, uninterpreted.
        usage: Token usage reported by the backend.
        model: Model identifier that answered.
    """
    text: str
    usage: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None


class VisionBackend(ABC):
    """One-request-per-call interface to a vision model."""

    name: str = "abstract"

    @abstractmethod
    def complete(
        self,
        template: PromptTemplate,
        pages: List[PageContent],
        timeout: float
    ) -> ModelResponse:
        """
        Send all pages of one document with a prompt template.

        Raises:
            ExternalAPIError: On transport or service failure.
        """

    def close(self) -> None:
        """Release backend resources."""


def image_to_data_url(image: Image.Image, fmt: str = "PNG") -> str:
    """Encode a PIL image as a base64 data URL."""
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    encoded = base64.b64encode(buffer.getvalue()).decode("utf-8")
    return f"data:image/{fmt.lower()};base64,{encoded}"


# =============================================================================
# OPENAI-COMPATIBLE CHAT BACKEND
# =============================================================================

class OpenAIVisionBackend(VisionBackend):
    """
    Chat-completions vision backend.

    The client is created on first use so the backend can be constructed
    without credentials (e.g. for --help or dry runs).

    Example:
        >>> backend = OpenAIVisionBackend(model="gpt-4o-mini")
        >>> response = backend.complete(template, document.pages, timeout=60)
        >>> print(response.text)
    """

    name = "openai"

    SYSTEM_PROMPT = (
        "You extract VAT (value added tax) amounts from financial documents. "
        "Report only amounts printed on the document."
    )

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        image_detail: Optional[str] = None,
        client: Optional[Any] = None
    ) -> None:
        self.model = model or get_config("vision.openai.model", "gpt-4o-mini")
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self.base_url = base_url or get_config("vision.openai.base_url") or os.environ.get("OPENAI_BASE_URL")
        self.max_tokens = max_tokens or get_config("vision.openai.max_tokens", 800)
        self.temperature = (
            temperature if temperature is not None
            else get_config("vision.openai.temperature", 0.0)
        )
        self.image_detail = image_detail or get_config("vision.openai.image_detail", "high")
        self._client = client
        self._client_lock = threading.Lock()

        logger.debug(f"OpenAIVisionBackend initialized (model={self.model})")

    def _get_client(self) -> Any:
        with self._client_lock:
            if self._client is None:
                try:
                    # Retries are handled by VisionExtractionClient
                    self._client = openai.OpenAI(
                        api_key=self.api_key,
                        base_url=self.base_url,
                        max_retries=0,
                    )
                except openai.OpenAIError as e:
                    raise ModelLoadError(self.name, str(e))
            return self._client

    def build_messages(self, template: PromptTemplate, pages: List[PageContent]) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = [{"type": "text", "text": template.prompt}]
        for page in pages:
            if page.image is not None:
                content.append({
                    "type": "image_url",
                    "image_url": {
                        "url": image_to_data_url(page.image),
                        "detail": self.image_detail,
                    },
                })
            elif page.text:
                label = page.label or f"page {page.index + 1}"
                content.append({"type": "text", "text": f"--- {label} ---\n{page.text}"})

        return [
            {"role": "system", "content": self.SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ]

    def complete(
        self,
        template: PromptTemplate,
        pages: List[PageContent],
        timeout: float
    ) -> ModelResponse:
        client = self._get_client()
        messages = self.build_messages(template, pages)

        try:
            completion = client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                timeout=timeout,
            )
        except (openai.APITimeoutError, openai.APIConnectionError) as e:
            raise ExternalAPIError(
                f"Network/timeout while calling vision model: {e}",
                {"backend": self.name, "model": self.model},
                retryable=True,
            )
        except openai.RateLimitError as e:
            raise ExternalAPIError(
                "Vision model rate limit reached",
                {"backend": self.name, "status": e.status_code},
                retryable=True,
            )
        except openai.APIStatusError as e:
            body = getattr(getattr(e, "response", None), "text", None)
            raise ExternalAPIError(
                f"Vision model returned HTTP {e.status_code}",
                {"backend": self.name, "status": e.status_code,
                 "body": body[:300] if body else None},
                retryable=e.status_code >= 500 or e.status_code in (408, 409),
            )

        choice = completion.choices[0] if getattr(completion, "choices", None) else None
        text = choice.message.content if choice is not None and choice.message else None

        usage = getattr(completion, "usage", None)
        usage_dict = {
            k: getattr(usage, k, None) if usage else None
            for k in ("prompt_tokens", "completion_tokens", "total_tokens")
        }
        logger.debug(f"Chat completion id={getattr(completion, 'id', None)} usage={usage_dict}")

        return ModelResponse(text=text or "", usage=usage_dict, model=self.model)

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None and hasattr(self._client, "close"):
                self._client.close()
            self._client = None


# =============================================================================
# LOCAL DOCUMENT-QA BACKEND
# =============================================================================

class LayoutLMBackend(VisionBackend):
    """
    Local document-question-answering backend.

    Asks the template's question on every rendered page and reports the
    best-scoring answer as text, e.g. "Total VAT: 23.00" followed by
    "Confidence: 87%". Text-only pages are skipped. Requires the
    'layoutlm' extra (transformers and pytesseract).
    """

    name = "layoutlm"

    def __init__(
        self,
        model_name: Optional[str] = None,
        device: Optional[str] = None,
        pipeline: Optional[Any] = None
    ) -> None:
        self.model_name = model_name or get_config(
            "vision.layoutlm.model_name", "impira/layoutlm-document-qa"
        )
        self.device = device or get_config("vision.layoutlm.device", "cpu")
        self._pipeline = pipeline
        self._lock = threading.Lock()

    def _initialize_model(self) -> Any:
        """
        Load the transformers pipeline on first use.

        Raises:
            ModelLoadError: If transformers is missing or the model cannot load.
        """
        with self._lock:
            if self._pipeline is not None:
                return self._pipeline
            try:
                from transformers import pipeline
            except ImportError:
                raise ModelLoadError(
                    self.model_name,
                    "transformers package not installed. Install with: pip install .[layoutlm]"
                )

            logger.info(f"Loading document-qa model: {self.model_name}")
            try:
                self._pipeline = pipeline(
                    "document-question-answering",
                    model=self.model_name,
                    device=0 if self.device == "cuda" else -1
                )
            except Exception as e:
                raise ModelLoadError(self.model_name, str(e))
            return self._pipeline

    def complete(
        self,
        template: PromptTemplate,
        pages: List[PageContent],
        timeout: float
    ) -> ModelResponse:
        qa = self._initialize_model()

        best_answer, best_score = None, 0.0
        for page in pages:
            if page.image is None:
                continue
            try:
                result = qa(image=page.image, question=template.question)
            except Exception as e:
                raise ExternalAPIError(
                    f"Document-QA inference failed: {e}",
                    {"backend": self.name, "model": self.model_name, "page": page.index},
                    retryable=False,
                )
            if isinstance(result, list):
                result = result[0] if result else {}
            answer = str(result.get("answer", "")).strip()
            score = float(result.get("score", 0.0))
            if answer and score > best_score:
                best_answer, best_score = answer, score

        if best_answer is None:
            return ModelResponse(text="", model=self.model_name)

        text = f"Total VAT: {best_answer}\nConfidence: {best_score * 100:.0f}%"
        return ModelResponse(text=text, usage={"pages": len(pages)}, model=self.model_name)


SUPPORTED_BACKENDS = {
    OpenAIVisionBackend.name: OpenAIVisionBackend,
    LayoutLMBackend.name: LayoutLMBackend,
}


def create_backend(name: Optional[str] = None, **kwargs: Any) -> VisionBackend:
    """
    Create a vision backend by name.

    Args:
        name: 'openai' or 'layoutlm'; defaults to vision.backend.
        **kwargs: Passed to the backend constructor.

    Raises:
        ModelLoadError: For an unknown backend name.
    """
    name = (name or get_config("vision.backend", "openai")).lower()
    if name not in SUPPORTED_BACKENDS:
        raise ModelLoadError(name, f"unknown backend, expected one of {sorted(SUPPORTED_BACKENDS)}")
    return SUPPORTED_BACKENDS[name](**kwargs)
