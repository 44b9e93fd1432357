"""
Model Inference Module.

Vision-model extraction: prompt templates, backends, the retrying client
and the parser that interprets raw model text.

Main Classes:
    - VisionExtractionClient: Timeout-bounded, retrying model client
    - VisionBackend: Backend contract (OpenAI chat, LayoutLM document-QA)
    - TemplateRegistry: Weighted prompt template selection
    - ResponseParser: Raw text to candidate amounts and diagnostic
    - ExtractionResult: Canonical reconciled result
"""

from .extraction_result import (
    Engine,
    Diagnostic,
    Flag,
    SourceCandidate,
    StructuredCandidate,
    VisionCandidate,
    FallbackCandidate,
    ExtractionResult,
    empty_result,
)
from .templates import PromptTemplate, TemplateRegistry
from .response_parser import ResponseParser, ParsedResponse
from .backends import (
    VisionBackend,
    ModelResponse,
    OpenAIVisionBackend,
    LayoutLMBackend,
    SUPPORTED_BACKENDS,
    create_backend,
)
from .vision_client import VisionExtractionClient, VisionResponse

__all__ = [
    'Engine',
    'Diagnostic',
    'Flag',
    'SourceCandidate',
    'StructuredCandidate',
    'VisionCandidate',
    'FallbackCandidate',
    'ExtractionResult',
    'empty_result',
    'PromptTemplate',
    'TemplateRegistry',
    'ResponseParser',
    'ParsedResponse',
    'VisionBackend',
    'ModelResponse',
    'OpenAIVisionBackend',
    'LayoutLMBackend',
    'SUPPORTED_BACKENDS',
    'create_backend',
    'VisionExtractionClient',
    'VisionResponse',
]
