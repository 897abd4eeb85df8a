"""FastAPI application for document intake.

Endpoints:
- Document scan: structured invoice or OCR + pattern extraction
- Pattern learning from user-confirmed values
- Health and readiness checks
- Prometheus metrics

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import logging
import time
import uuid

from fastapi import FastAPI, File, HTTPException, Request, Response, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from intake.api import metrics
from intake.extraction.extractor import PatternExtractor
from intake.extraction.learner import PatternLearner
from intake.extraction.schema import ExtractionResult, FieldName
from intake.ocr.service import OCRService
from intake.patterns.factory import create_pattern_store
from intake.patterns.store import SupplierPattern
from intake.pipeline.service import IntakePipeline
from intake.shared.config import get_settings
from intake.structured.zugferd import ZugferdInvoiceParser
from intake.suppliers.directory import load_supplier_directory
from intake.suppliers.resolver import SupplierResolver

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Document Intake",
    description="Field extraction for structured e-invoices and scanned purchase documents",
    version=settings.service_version,
)

ocr_service = OCRService(settings)
pattern_store = create_pattern_store(settings)
supplier_directory = load_supplier_directory(settings.suppliers_file)
pipeline = IntakePipeline(
    settings,
    parser=ZugferdInvoiceParser(),
    ocr_service=ocr_service,
    extractor=PatternExtractor(settings, pattern_store),
    learner=PatternLearner(settings, pattern_store),
    resolver=SupplierResolver(supplier_directory),
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request count and duration metrics."""
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=request.url.path,
    ).observe(duration)

    return response


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    pattern_store_available: bool
    ocr_available: bool


class ScanResponse(BaseModel):
    """Document scan response."""

    document_id: str
    result: ExtractionResult


class LearnRequest(BaseModel):
    """A single confirmed field value."""

    field_name: FieldName
    raw_text: str = Field(..., description="Original OCR text of the document")
    confirmed_value: str = Field(..., description="Value the user confirmed")


class LearnResponse(BaseModel):
    """Outcome of learning one field."""

    learned: bool
    pattern: SupplierPattern | None = None


class ConfirmRequest(BaseModel):
    """All confirmed field values of one document."""

    raw_text: str = Field(..., description="Original OCR text of the document")
    fields: dict[FieldName, str | None]


class PatternListResponse(BaseModel):
    """Patterns stored for a supplier."""

    supplier_id: str
    patterns: list[SupplierPattern]


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe.

    Returns:
        Health status information
    """
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint.

    The service is ready when its pattern store answers. Missing OCR tools
    only disable the scan path, so they are reported but do not fail readiness.

    Returns:
        Readiness status
    """
    is_available = getattr(pattern_store, "is_available", None)
    store_ok = is_available() if callable(is_available) else True
    return ReadinessResponse(
        ready=store_ok,
        pattern_store_available=store_ok,
        ocr_available=ocr_service.is_available(),
    )


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.post("/api/v1/documents/scan", response_model=ScanResponse, tags=["Documents"])
async def scan_document(
    file: UploadFile = File(..., description="XRechnung/ZUGFeRD file, PDF or image"),  # noqa: B008
) -> ScanResponse:
    """Take in a purchase document and extract its invoice fields.

    Structured electronic invoices (XML, or PDF with embedded invoice XML) are
    read directly. Anything else is OCRed and run through the supplier's
    learned patterns, or generic patterns if no supplier is recognized.

    ```bash
    curl -X POST "http://localhost:8000/api/v1/documents/scan" -F "file=@invoice.pdf"
    ```

    Args:
        file: Document to take in

    Returns:
        Scan response with the extraction result

    Raises:
        HTTPException: 400 for a missing filename or empty file, 413 if too large
    """
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No filename provided")

    content = await file.read()
    if not content:
        metrics.documents_uploaded_total.labels(status="rejected").inc()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    if len(content) > settings.max_upload_bytes:
        metrics.documents_uploaded_total.labels(status="rejected").inc()
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_upload_bytes} bytes",
        )

    metrics.document_upload_size_bytes.observe(len(content))
    metrics.documents_uploaded_total.labels(status="accepted").inc()

    doc_id = str(uuid.uuid4())
    logger.info(f"Scanning document {doc_id} ('{file.filename}', {len(content)} bytes)")
    result = await run_in_threadpool(pipeline.intake, content, file.filename)

    return ScanResponse(document_id=doc_id, result=result)


@app.post(
    "/api/v1/suppliers/{supplier_id}/patterns",
    response_model=LearnResponse,
    tags=["Patterns"],
)
def learn_pattern(supplier_id: str, request: LearnRequest) -> LearnResponse:
    """Learn the pattern for one field from a confirmed value.

    Args:
        supplier_id: Supplier the document belongs to
        request: Field, original OCR text and confirmed value

    Returns:
        Whether a pattern was stored, and the pattern
    """
    stored = pipeline.learn(
        supplier_id, request.field_name, request.raw_text, request.confirmed_value
    )
    return LearnResponse(learned=stored is not None, pattern=stored)


@app.post(
    "/api/v1/suppliers/{supplier_id}/patterns/confirm",
    response_model=PatternListResponse,
    tags=["Patterns"],
)
def confirm_document(supplier_id: str, request: ConfirmRequest) -> PatternListResponse:
    """Learn patterns for every confirmed field of a document.

    Args:
        supplier_id: Supplier the document belongs to
        request: Original OCR text and confirmed values

    Returns:
        Patterns stored by this call
    """
    learned = pipeline.learn_confirmed(supplier_id, request.raw_text, request.fields)
    return PatternListResponse(supplier_id=supplier_id, patterns=learned)


@app.get(
    "/api/v1/suppliers/{supplier_id}/patterns",
    response_model=PatternListResponse,
    tags=["Patterns"],
)
def list_patterns(supplier_id: str) -> PatternListResponse:
    """List the learned patterns of a supplier, ordered by field name.

    Args:
        supplier_id: Supplier to list

    Returns:
        Stored patterns
    """
    return PatternListResponse(supplier_id=supplier_id, patterns=pattern_store.get_all(supplier_id))
