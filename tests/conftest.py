"""
Pytest Configuration and Fixtures
==================================
Shared fixtures for the VAT extraction test suite.
"""

import io
import os
import random
import sys
import threading
import time

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import ConfigurationManager
from vat_extraction.model_inference import (
    ModelResponse,
    PromptTemplate,
    TemplateRegistry,
    VisionBackend,
    VisionExtractionClient,
)


RECEIPT_TEXT = (
    "VAT MIN €1.51\n"
    "VAT NIL €0.00\n"
    "VAT STD23 €109.85\n"
    "Total Amount VAT: €111.36"
)


# =============================================================================
# ENVIRONMENT FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def default_configuration(monkeypatch):
    """Every test starts from the packaged settings.yaml."""
    monkeypatch.delenv("VAT_EXTRACTION_CONFIG", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    ConfigurationManager.reset()
    yield
    ConfigurationManager.reset()


class FakeClock:
    """Manually advanced clock for TTL and window tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# VISION FIXTURES
# =============================================================================

class ScriptedBackend(VisionBackend):
    """
    Vision backend replaying scripted responses.

    Each item is either response text or an exception to raise. When the
    script runs out, `default` is used.
    """

    name = "scripted"

    def __init__(self, responses=None, default=RECEIPT_TEXT, delay=0.0):
        self.responses = list(responses or [])
        self.default = default
        self.delay = delay
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()

    def complete(self, template, pages, timeout):
        with self._lock:
            self.calls.append(template.id)
            item = self.responses.pop(0) if self.responses else self.default
        if self.delay:
            time.sleep(self.delay)
        if isinstance(item, BaseException):
            raise item
        return ModelResponse(text=item, usage={"total_tokens": 42}, model="scripted-model")

    def close(self):
        self.closed = True

    @property
    def call_count(self):
        return len(self.calls)


@pytest.fixture
def registry():
    templates = [
        PromptTemplate(id="vat-lines-v1", prompt="List every VAT line and the Total VAT."),
        PromptTemplate(id="vat-json-v1", prompt="Reply with JSON only."),
    ]
    return TemplateRegistry(templates, rng=random.Random(7))


@pytest.fixture
def make_client(registry):
    """Factory for a VisionExtractionClient that never really sleeps."""
    clients = []

    def factory(backend, **kwargs):
        kwargs.setdefault("timeout", 5)
        kwargs.setdefault("max_attempts", 3)
        kwargs.setdefault("backoff_base", 0)
        kwargs.setdefault("sleep", lambda _: None)
        client = VisionExtractionClient(backend, registry, **kwargs)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.shutdown()


# =============================================================================
# DOCUMENT FIXTURES
# =============================================================================

@pytest.fixture
def png_bytes():
    from PIL import Image

    buffer = io.BytesIO()
    Image.new("RGB", (120, 80), "white").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def pdf_bytes():
    import fitz

    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), "Invoice 2026-0042")
    page.insert_text((72, 96), "VAT 23% EUR 4.60")
    page.insert_text((72, 120), "Total VAT: EUR 4.60")
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def xlsx_bytes():
    from openpyxl import Workbook

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Sales"
    sheet.append(["Date", "Description", "Net", "VAT Amount"])
    sheet.append(["2026-01-02", "Consulting", 100.0, 23.0])
    sheet.append(["2026-01-05", "Training", 50.0, 11.5])
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def csv_bytes():
    return (
        "Date,Description,VAT Amount\n"
        "2026-01-02,Fuel,4.60\n"
        "2026-01-03,Parking,0.46\n"
        "Total,,5.06\n"
    ).encode("utf-8")
