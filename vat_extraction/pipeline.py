"""
Extraction Pipeline.

Wires the components into the document-processing flow:

    Normalizer -> Structured Parser | Vision Client -> Response Parser
               -> Multi-Source Validator -> Cache -> Monitor

Jobs run on the ProcessingQueue; user corrections go to the
LearningFeedbackLoop, which adjusts template weights in the background.

Every collaborator is constructed explicitly and injected; start() and
shutdown() control the background threads.

Usage:
    with ExtractionPipeline.from_config() as pipeline:
        receipt = pipeline.submit(data, "application/pdf", "sales")
        job = pipeline.wait_for(receipt.job_id)

Author: ML Engineering Team
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from config import ConfigurationManager, get_config
from vat_extraction.cache import ExtractionCache
from vat_extraction.documents import Category, Document, DocumentStatus
from vat_extraction.evaluation import (
    ConfidenceMonitor,
    FeedbackInsights,
    LearningFeedbackLoop,
)
from vat_extraction.input_handler import (
    DocumentNormalizer,
    NormalizedDocument,
    SUPPORTED_MEDIA_TYPES,
)
from vat_extraction.model_inference import (
    Diagnostic,
    ExtractionResult,
    Flag,
    ResponseParser,
    SourceCandidate,
    TemplateRegistry,
    VisionCandidate,
    VisionExtractionClient,
    create_backend,
)
from vat_extraction.postprocessor import MultiSourceValidator
from vat_extraction.processing import JobStatus, ProcessingQueue, QueueJob
from vat_extraction.storage import IdentityProvider, InMemoryStorage, StaticIdentity, Storage
from vat_extraction.structured_parser import StructuredParser
from vat_extraction.utils.exceptions import (
    CorruptedDocumentError,
    ErrorCategory,
    ExternalAPIError,
    InputError,
    ParseError,
    UnsupportedMediaTypeError,
    categorize,
)
from vat_extraction.utils.helpers import compute_fingerprint, generate_id
from vat_extraction.utils.logger import get_logger

# Initialize module logger
logger = get_logger(__name__)

_FINISHED = {DocumentStatus.SUCCEEDED, DocumentStatus.FAILED, DocumentStatus.CORRECTED}
_IN_FLIGHT = {DocumentStatus.QUEUED, DocumentStatus.PROCESSING}


@dataclass(frozen=True)
class ExtractionJob:
    """Payload of a queued extraction."""
    document_id: str
    fingerprint: str
    category: Category
    force: bool = False


@dataclass(frozen=True)
class SubmissionReceipt:
    """
    Answer to submit().

    Attributes:
        status: 'queued' or 'cached'.
        document_id: Stored document.
        job_id: Queue job when status is 'queued'.
        cached_result: Result when status is 'cached'.
    """
    status: str
    document_id: str
    job_id: Optional[str] = None
    cached_result: Optional[ExtractionResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'status': self.status, 'document_id': self.document_id, 'job_id': self.job_id}
        if self.cached_result is not None:
            data['cached_result'] = self.cached_result.to_dict(include_candidates=False)
        return data


@dataclass
class _Collected:
    candidates: List[SourceCandidate] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


class ExtractionPipeline:
    """
    Facade over the extraction-and-learning pipeline.

    Attributes:
        vision_client: Retrying vision model client.
        cache: Fingerprint-keyed result cache.
        monitor: Rolling outcome statistics.
        storage: Documents, payloads, results and feedback.
        learning: Feedback loop adjusting template weights.
        queue: Batch processing queue.

    Example:
        >>> pipeline = ExtractionPipeline.from_config(backend="openai")
        >>> pipeline.start()
        >>> result = pipeline.extract(pdf_bytes, "application/pdf", "purchases")
        >>> result.to_dict()["purchase_amounts"]
        [23.0]
        >>> pipeline.shutdown()
    """

    def __init__(
        self,
        vision_client: VisionExtractionClient,
        cache: Optional[ExtractionCache] = None,
        monitor: Optional[ConfidenceMonitor] = None,
        storage: Optional[Storage] = None,
        identity: Optional[IdentityProvider] = None,
        normalizer: Optional[DocumentNormalizer] = None,
        structured_parser: Optional[StructuredParser] = None,
        response_parser: Optional[ResponseParser] = None,
        validator: Optional[MultiSourceValidator] = None,
        learning: Optional[LearningFeedbackLoop] = None,
        queue_options: Optional[Dict[str, Any]] = None,
        fallback_confidence: Optional[float] = None
    ) -> None:
        self.vision_client = vision_client
        self.monitor = monitor or ConfidenceMonitor()
        self.cache = cache if cache is not None else ExtractionCache(on_error=self._on_cache_error)
        self.storage = storage or InMemoryStorage()
        self.identity = identity or StaticIdentity()
        self.normalizer = normalizer or DocumentNormalizer()
        self.structured_parser = structured_parser or StructuredParser()
        self.response_parser = response_parser or ResponseParser()
        self.validator = validator or MultiSourceValidator()
        self.learning = learning or LearningFeedbackLoop(
            registry=vision_client.registry,
            storage=self.storage,
            monitor=self.monitor,
            identity=self.identity,
        )
        self.queue = ProcessingQueue(handler=self._run_job, **(queue_options or {}))
        self.fallback_confidence = float(
            fallback_confidence if fallback_confidence is not None
            else get_config("validator.fallback_confidence", 0.3)
        )

        self._lock = threading.RLock()
        self._active_jobs: Dict[str, str] = {}
        self._started = False

        logger.info("ExtractionPipeline initialized")

    @classmethod
    def from_config(
        cls,
        config_path: Optional[str] = None,
        backend: Optional[str] = None,
        storage: Optional[Storage] = None,
        identity: Optional[IdentityProvider] = None,
        **backend_kwargs: Any
    ) -> 'ExtractionPipeline':
        """
        Build a pipeline from settings.yaml.

        Args:
            config_path: Alternative settings file.
            backend: Vision backend name; defaults to vision.backend.
            storage: Storage implementation; in-memory when omitted.
            identity: Identity provider; anonymous when omitted.
            **backend_kwargs: Passed to the backend constructor.
        """
        if config_path is not None:
            ConfigurationManager.reset()
            ConfigurationManager(config_path)

        registry = TemplateRegistry.from_config()
        vision_client = VisionExtractionClient(create_backend(backend, **backend_kwargs), registry)
        monitor = ConfidenceMonitor()
        return cls(
            vision_client=vision_client,
            monitor=monitor,
            storage=storage,
            identity=identity,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> 'ExtractionPipeline':
        with self._lock:
            if self._started:
                return self
            self.cache.start()
            self.queue.start()
            self.learning.start()
            self._started = True
        logger.info("ExtractionPipeline started")
        return self

    def shutdown(self, wait: bool = True) -> None:
        """Stop the queue, learning loop, cache sweeper and vision client."""
        with self._lock:
            if not self._started:
                self.vision_client.shutdown()
                return
            self._started = False
        self.queue.shutdown(wait=wait)
        self.learning.shutdown()
        self.cache.shutdown()
        self.vision_client.shutdown()
        logger.info("ExtractionPipeline shut down")

    def __enter__(self) -> 'ExtractionPipeline':
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=exc_type is None)

    # -------------------------------------------------------------------------
    # Extraction entry points
    # -------------------------------------------------------------------------

    def submit(
        self,
        data: bytes,
        media_type: str,
        category: Union[Category, str],
        priority: int = 0,
        force_refresh: bool = False,
        filename: Optional[str] = None
    ) -> SubmissionReceipt:
        """
        Register a document and queue its extraction.

        A fresh cached result is returned immediately unless force_refresh
        is set. A document already queued for extraction returns its
        existing job.

        Raises:
            UnsupportedMediaTypeError: For media types the normalizer cannot read.
            CorruptedDocumentError: For empty payloads.
            ValueError: For an unknown category.
        """
        document = self._register(data, media_type, category, filename)

        if not force_refresh:
            cached = self.cache.get(document.fingerprint, count_miss=False)
            if cached is not None:
                logger.info(f"Document {document.id} served from cache")
                return SubmissionReceipt(status='cached', document_id=document.id, cached_result=cached)

        with self._lock:
            active_id = self._active_jobs.get(document.fingerprint)
            active = self.queue.get_job(active_id) if active_id else None
            if active is not None and active.status == JobStatus.QUEUED and not force_refresh:
                logger.debug(f"Document {document.id} already queued as {active.id}")
                return SubmissionReceipt(status='queued', document_id=document.id, job_id=active.id)

            self._advance(document.id, DocumentStatus.QUEUED, force=True)
            job = self.queue.submit(
                ExtractionJob(
                    document_id=document.id,
                    fingerprint=document.fingerprint,
                    category=document.category,
                    force=force_refresh,
                ),
                priority=priority,
            )
            self._active_jobs[document.fingerprint] = job.id

        logger.info(f"Document {document.id} queued as job {job.id} (priority={priority})")
        return SubmissionReceipt(status='queued', document_id=document.id, job_id=job.id)

    def extract(
        self,
        data: bytes,
        media_type: str,
        category: Union[Category, str],
        force_refresh: bool = False,
        filename: Optional[str] = None
    ) -> ExtractionResult:
        """
        Extract synchronously through the same cache and de-duplication.

        Raises:
            InputError: For unsupported, empty or corrupt documents.
            ExternalAPIError: When the vision model stays unavailable.
        """
        document = self._register(data, media_type, category, filename)
        return self._process(document.id, document.fingerprint, document.category, force_refresh)

    def _run_job(self, job: ExtractionJob) -> ExtractionResult:
        try:
            return self._process(job.document_id, job.fingerprint, job.category, job.force)
        finally:
            with self._lock:
                if self._active_jobs.get(job.fingerprint) is not None:
                    current = self.queue.get_job(self._active_jobs[job.fingerprint])
                    if current is None or current.status != JobStatus.QUEUED:
                        self._active_jobs.pop(job.fingerprint, None)

    def _process(
        self,
        document_id: str,
        fingerprint: str,
        category: Category,
        force: bool
    ) -> ExtractionResult:
        if self.storage.get_document(document_id) is None:
            raise InputError(f"Document {document_id} no longer exists", {"document_id": document_id})

        result, cached = self.cache.get_or_compute(
            fingerprint,
            lambda: self._compute(document_id, fingerprint, category),
            force=force,
        )

        if cached:
            self._settle_from_cache(document_id)
        if self.storage.get_document(document_id) is None:
            self.cache.delete(fingerprint)
            logger.info(f"Document {document_id} was deleted during extraction; cache entry dropped")
        return result

    def _compute(self, document_id: str, fingerprint: str, category: Category) -> ExtractionResult:
        """Full extraction of one document. Runs once per fingerprint at a time."""
        started = time.monotonic()
        self._advance(document_id, DocumentStatus.QUEUED, force=True)
        self._advance(document_id, DocumentStatus.PROCESSING)

        try:
            document = self.storage.get_document(document_id)
            data = self.storage.get_payload(document_id)
            if document is None or data is None:
                raise InputError(f"Document {document_id} no longer exists", {"document_id": document_id})

            normalized = self.normalizer.normalize(data, document.media_type)
            collected = self._collect_candidates(normalized)
            collected.metadata.update({
                'document_id': document_id,
                'fingerprint': fingerprint,
                'media_type': document.media_type,
                'page_count': normalized.page_count,
            })
            result = self.validator.reconcile(collected.candidates, category, collected.metadata)
        except Exception as exc:
            elapsed_ms = (time.monotonic() - started) * 1000
            self.monitor.record_error(categorize(exc))
            self.monitor.record_outcome(succeeded=False, confidence=0.0, processing_time_ms=elapsed_ms)
            self._advance(document_id, DocumentStatus.FAILED, error=str(exc))
            logger.error(f"Extraction failed for document {document_id}: {exc}")
            raise

        elapsed_ms = (time.monotonic() - started) * 1000
        if Flag.SOURCE_DISAGREEMENT in result.flags:
            self.monitor.record_error(ErrorCategory.VALIDATION_ERROR)
        self.monitor.record_outcome(
            succeeded=True,
            confidence=result.confidence,
            processing_time_ms=elapsed_ms,
            diagnostic=self._diagnostic_of(result),
            needs_review=result.needs_review,
            engine=result.engine,
        )

        if self.storage.get_document(document_id) is not None:
            self.storage.save_result(document_id, result)
            self._advance(document_id, DocumentStatus.SUCCEEDED)

        logger.info(
            f"Document {document_id}: engine={result.engine.value}, total={result.total:.2f}, "
            f"confidence={result.confidence:.2f}, {elapsed_ms:.0f}ms"
        )
        return result

    def _collect_candidates(self, document: NormalizedDocument) -> _Collected:
        collected = _Collected()

        structured = None
        if document.is_tabular:
            structured = self.structured_parser.parse_document(document)
            if structured is not None:
                collected.candidates.append(structured)

        if structured is not None and structured.confidence >= self.validator.structured_high_confidence:
            logger.debug("Structured candidate is conclusive; vision skipped")
            return collected

        try:
            response = self.vision_client.extract(document)
        except ExternalAPIError as exc:
            if not collected.candidates:
                raise
            self.monitor.record_error(exc.category)
            logger.warning(f"Vision unavailable, continuing with structured candidate: {exc.message}")
            return collected

        parsed = self.response_parser.parse(response.text)
        collected.candidates.append(
            self.response_parser.to_vision_candidate(
                parsed, response.template_id, response.text, response.usage
            )
        )
        collected.metadata.update({
            'template_id': response.template_id,
            'attempts': response.attempts,
            'latency_ms': round(response.latency_ms, 1),
            'model': response.model,
        })

        if parsed.is_clean:
            return collected

        try:
            self.response_parser.raise_for_diagnostic(parsed)
        except ParseError as exc:
            self.monitor.record_error(exc.category)
            logger.warning(f"{exc.message}; trying the document's own text")
        self.monitor.record_parse_failure(response.text, parsed.diagnostic, response.template_id)

        text = document.text
        if text.strip():
            collected.candidates.append(
                self.response_parser.fallback_candidate(
                    text, reason=parsed.diagnostic.value, cap=self.fallback_confidence
                )
            )
        return collected

    @staticmethod
    def _diagnostic_of(result: ExtractionResult) -> Optional[Diagnostic]:
        for candidate in result.candidates:
            if isinstance(candidate, VisionCandidate):
                return candidate.diagnostic
        return None

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    def _register(
        self,
        data: bytes,
        media_type: str,
        category: Union[Category, str],
        filename: Optional[str]
    ) -> Document:
        category = Category.parse(category)
        media = self.normalizer.canonical_media_type(media_type or "")
        try:
            if not self.normalizer.is_supported(media):
                raise UnsupportedMediaTypeError(media_type, list(SUPPORTED_MEDIA_TYPES))
            if not data:
                raise CorruptedDocumentError("empty payload", source=filename)
        except InputError:
            self.monitor.record_error(ErrorCategory.INPUT_ERROR)
            raise

        fingerprint = compute_fingerprint(data, media, category.value)
        with self._lock:
            document = self.storage.find_document(fingerprint)
            if document is None:
                document = Document(
                    id=generate_id("doc"),
                    fingerprint=fingerprint,
                    media_type=media,
                    category=category,
                    size_bytes=len(data),
                    filename=filename,
                    owner_id=self.identity.current_user_id(),
                )
                self.storage.save_document(document, data)
                logger.debug(f"Registered {document!r}")
        return document

    def _advance(
        self,
        document_id: str,
        target: DocumentStatus,
        force: bool = False,
        error: Optional[str] = None
    ) -> None:
        """
        Move a document toward target when the lifecycle allows it.

        Concurrent jobs for one document race here; a move that is no
        longer legal leaves the document as it is.
        """
        with self._lock:
            document = self.storage.get_document(document_id)
            if document is None or document.status == target:
                return
            if target == DocumentStatus.QUEUED and document.status in _IN_FLIGHT:
                return
            if not document.can_transition(target, force=force):
                logger.debug(
                    f"Document {document_id} stays {document.status.value} "
                    f"(requested {target.value})"
                )
                return
            document.transition(target, force=force, error=error)
            self.storage.update_document(document)

    def _settle_from_cache(self, document_id: str) -> None:
        with self._lock:
            document = self.storage.get_document(document_id)
            if document is not None and document.status == DocumentStatus.QUEUED:
                self._advance(document_id, DocumentStatus.PROCESSING)
                self._advance(document_id, DocumentStatus.SUCCEEDED)

    def get_document(self, document_id: str) -> Optional[Document]:
        return self.storage.get_document(document_id)

    def delete_document(self, document_id: str) -> bool:
        """
        Delete a document, cancel its queued job and drop its cached result.

        A job already running completes; its cache entry is dropped
        once it finishes.
        """
        with self._lock:
            document = self.storage.get_document(document_id)
            if document is None:
                return False
            job_id = self._active_jobs.pop(document.fingerprint, None)
            if job_id is not None:
                self.queue.cancel(job_id)
            self.storage.delete_document(document_id)
        self.cache.delete(document.fingerprint)
        logger.info(f"Deleted document {document_id}")
        return True

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.queue.get_job(job_id)
        if job is None:
            return None
        status = job.to_dict()
        status['document_id'] = job.payload.document_id
        if job.status == JobStatus.SUCCEEDED and job.result is not None:
            status['result'] = job.result.to_dict(include_candidates=False)
        elif job.status == JobStatus.FAILED:
            status['confidence'] = 0.0
        return status

    def wait_for(self, job_id: str, timeout: Optional[float] = None) -> QueueJob:
        return self.queue.wait_for(job_id, timeout)

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued job; its document is marked failed."""
        job = self.queue.get_job(job_id)
        if job is None or not self.queue.cancel(job_id):
            return False
        self._advance(job.payload.document_id, DocumentStatus.FAILED, error="cancelled")
        with self._lock:
            if self._active_jobs.get(job.payload.fingerprint) == job_id:
                self._active_jobs.pop(job.payload.fingerprint, None)
        return True

    # -------------------------------------------------------------------------
    # Feedback
    # -------------------------------------------------------------------------

    def submit_feedback(
        self,
        document_id: str,
        original: Optional[Union[ExtractionResult, Dict[str, Any]]],
        corrected: Union[ExtractionResult, Dict[str, Any]],
        feedback: str,
        notes: Optional[str] = None,
        confidence_rating: Optional[int] = None
    ) -> FeedbackInsights:
        """
        Record a user correction.

        The stored extraction result and its cache entry stay as the pipeline
        produced them; the correction lives in the FeedbackRecord only.

        Args:
            document_id: Corrected document.
            original: Result shown to the user; the stored result when None.
            corrected: Corrected result, or a dict with sales_amounts,
                purchase_amounts and/or compliant applied on top of the original.
            feedback: correct, partially_correct or incorrect.
            notes: Optional free-text note.
            confidence_rating: Optional 1-5 rating.

        Returns:
            FeedbackInsights for the user.

        Raises:
            ValueError: For an unknown document or missing original result.
        """
        document = self.storage.get_document(document_id)
        if document is None:
            raise ValueError(f"Unknown document: {document_id}")

        if original is None:
            original = self.storage.get_result(document_id)
        elif isinstance(original, dict):
            original = ExtractionResult.from_dict(original)
        if original is None:
            raise ValueError(f"No extraction result to correct for document {document_id}")

        if isinstance(corrected, dict):
            corrected = original.with_amounts(
                sales_amounts=corrected.get('sales_amounts', original.sales_amounts),
                purchase_amounts=corrected.get('purchase_amounts', original.purchase_amounts),
                compliant=corrected.get('compliant'),
            )

        record, insights = self.learning.submit(
            document_id=document_id,
            original=original,
            corrected=corrected,
            feedback=feedback,
            notes=notes,
            confidence_rating=confidence_rating,
            media_type=document.media_type,
        )

        logger.info(
            f"Feedback {record.id} on document {document_id}: {record.feedback.value}, "
            f"{len(record.field_diffs)} field(s) corrected"
        )
        self._advance(document_id, DocumentStatus.CORRECTED)
        return insights

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    def _on_cache_error(self, error: Exception) -> None:
        self.monitor.record_error(ErrorCategory.CACHE_ERROR)

    def get_monitoring(self) -> Dict[str, Any]:
        """Monitor snapshot plus cache, queue and template statistics."""
        snapshot = self.monitor.snapshot().to_dict()
        snapshot['cache'] = self.cache_stats()
        snapshot['queue'] = self.queue_metrics()
        snapshot['templates'] = {
            tid: stats.to_dict() for tid, stats in self.learning.template_stats().items()
        }
        return snapshot

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats().to_dict()

    def queue_metrics(self) -> Dict[str, Any]:
        return self.queue.metrics().to_dict()
