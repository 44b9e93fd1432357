"""
Tests for VisionExtractionClient and TemplateRegistry
======================================================
Retry, timeout and template weighting behaviour against a scripted backend.
"""

import random

import pytest

from tests.conftest import RECEIPT_TEXT, ScriptedBackend
from vat_extraction.input_handler import DocumentNormalizer
from vat_extraction.model_inference import PromptTemplate, TemplateRegistry
from vat_extraction.utils.exceptions import ErrorCategory, ExternalAPIError


@pytest.fixture
def document():
    return DocumentNormalizer().normalize(b"VAT 23% EUR 4.60\nTotal VAT: EUR 4.60", "text/plain")


def _retryable(message="HTTP 503"):
    return ExternalAPIError(message, {"status": 503}, retryable=True)


class TestVisionExtractionClient:
    """Tests for VisionExtractionClient.extract."""

    def test_first_attempt_success(self, make_client, document):
        backend = ScriptedBackend()
        client = make_client(backend)

        response = client.extract(document)

        assert response.text == RECEIPT_TEXT
        assert response.attempts == 1
        assert response.template_id in ("vat-lines-v1", "vat-json-v1")
        assert response.usage == {"total_tokens": 42}
        assert response.model == "scripted-model"
        assert backend.call_count == 1

    def test_retries_with_exponential_backoff(self, make_client, document):
        sleeps = []
        backend = ScriptedBackend([_retryable(), _retryable()])
        client = make_client(backend, backoff_base=1.0, backoff_max=30.0, sleep=sleeps.append)

        response = client.extract(document)

        assert response.attempts == 3
        assert sleeps == [1.0, 2.0]
        assert backend.call_count == 3

    def test_gives_up_after_max_attempts(self, make_client, document):
        backend = ScriptedBackend([_retryable(), _retryable(), _retryable("HTTP 502")])
        client = make_client(backend)

        with pytest.raises(ExternalAPIError) as excinfo:
            client.extract(document)

        error = excinfo.value
        assert error.attempts == 3
        assert not error.retryable
        assert error.category == ErrorCategory.EXTERNAL_API_ERROR
        assert error.details["last_error"] == "HTTP 502"
        assert backend.call_count == 3

    def test_non_retryable_error_is_raised_immediately(self, make_client, document):
        backend = ScriptedBackend([ExternalAPIError("HTTP 401", retryable=False)])
        client = make_client(backend)

        with pytest.raises(ExternalAPIError) as excinfo:
            client.extract(document)

        assert excinfo.value.message == "HTTP 401"
        assert excinfo.value.attempts == 1
        assert backend.call_count == 1

    def test_unexpected_exception_is_wrapped_as_retryable(self, make_client, document):
        backend = ScriptedBackend([RuntimeError("socket closed")])
        client = make_client(backend)

        response = client.extract(document)

        assert response.attempts == 2
        assert backend.call_count == 2

    def test_slow_call_times_out(self, make_client, document):
        backend = ScriptedBackend(delay=0.5)
        client = make_client(backend, timeout=0.05, max_attempts=1)

        with pytest.raises(ExternalAPIError) as excinfo:
            client.extract(document)

        assert excinfo.value.attempts == 1
        assert "timeout" in excinfo.value.details["last_error"]

    def test_explicit_template_is_used(self, make_client, registry, document):
        backend = ScriptedBackend()
        client = make_client(backend)

        response = client.extract(document, template=registry.get("vat-json-v1"))

        assert response.template_id == "vat-json-v1"
        assert backend.calls == ["vat-json-v1"]

    def test_backoff_delay_is_capped(self, make_client):
        client = make_client(ScriptedBackend(), backoff_base=2.0, backoff_max=5.0)

        assert [client.backoff_delay(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 5.0, 5.0]

    def test_shutdown_closes_backend_and_rejects_calls(self, make_client, document):
        backend = ScriptedBackend()
        client = make_client(backend)

        client.shutdown()

        assert backend.closed
        with pytest.raises(ExternalAPIError):
            client.extract(document)


class TestTemplateRegistry:
    """Tests for weighted selection and weight updates."""

    def test_weights_are_bounded(self, registry):
        registry.adjust_weight("vat-lines-v1", -10)
        registry.adjust_weight("vat-json-v1", +10)

        assert registry.weights() == {
            "vat-lines-v1": registry.min_weight,
            "vat-json-v1": registry.max_weight,
        }

    def test_adjust_weight_bumps_version(self, registry):
        updated = registry.adjust_weight("vat-lines-v1", -0.2)

        assert updated.weight == pytest.approx(0.8)
        assert updated.version == 2

    def test_unknown_template_is_ignored(self, registry):
        assert registry.adjust_weight("missing", 1.0) is None
        assert registry.promote("missing") is None

    def test_promote_makes_leader(self, registry):
        registry.promote("vat-json-v1")

        assert registry.leader().id == "vat-json-v1"
        assert registry.promoted == "vat-json-v1"
        assert registry.get("vat-json-v1").weight == pytest.approx(2.0)

    def test_selection_follows_weights(self, registry):
        registry.adjust_weight("vat-lines-v1", -10)
        registry.adjust_weight("vat-json-v1", +10)
        rng = random.Random(1)

        picks = [registry.select(rng).id for _ in range(200)]

        assert picks.count("vat-json-v1") > 190

    def test_empty_registry_is_rejected(self):
        with pytest.raises(ValueError):
            TemplateRegistry([])

    def test_from_config_reads_packaged_templates(self):
        registry = TemplateRegistry.from_config()

        assert {"vat-lines-v1", "vat-json-v1"} <= set(registry.weights())
        assert all(isinstance(t, PromptTemplate) for t in registry.all())
