"""
VAT Extraction Pipeline - Source Package.

This package contains the modules of the VAT extraction-and-learning
pipeline. Each module has a single responsibility.

Modules:
    - input_handler: Document normalization (PDF, images, CSV, XLSX, text)
    - structured_parser: Column-based VAT extraction from tabular data
    - model_inference: Vision backends, retrying client, response parser
    - postprocessor: Multi-source reconciliation
    - cache: Fingerprint-keyed result cache with in-flight de-duplication
    - processing: Priority batch queue
    - evaluation: Confidence monitor and learning feedback loop

Architecture:
    Normalize → Structured Parser | Vision → Response Parser → Validator
                                                                 ↓
                                             Cache ← Result → Monitor
                                                                 ↓
                                                   Feedback → Template weights
"""

__version__ = "1.0.0"
__author__ = "ML Engineering Team"

from .pipeline import ExtractionPipeline, SubmissionReceipt

__all__ = [
    'ExtractionPipeline',
    'SubmissionReceipt',
    'input_handler',
    'structured_parser',
    'model_inference',
    'postprocessor',
    'cache',
    'processing',
    'evaluation',
    'utils',
]
