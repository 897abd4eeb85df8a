"""OCR service driving the Tesseract and pdftoppm command-line tools.

Images go straight to Tesseract; PDFs are first rasterized (first page only)
with pdftoppm from poppler-utils. Every call works inside its own temporary
directory, which is deleted whatever the outcome.

Based on:
- Tesseract CLI: https://tesseract-ocr.github.io/tessdoc/Command-Line-Usage.html
- pdftoppm(1): https://poppler.freedesktop.org/
"""

import logging
import shutil
import time
from pathlib import Path

from prometheus_client import Counter, Histogram
from pydantic import BaseModel

from intake.ocr.process import ToolError, ToolTimeoutError, run_tool, temporary_workspace
from intake.shared.config import Settings

logger = logging.getLogger(__name__)

ocr_processing_duration_seconds = Histogram(
    "ocr_processing_duration_seconds",
    "OCR processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

ocr_tool_failures_total = Counter(
    "ocr_tool_failures_total",
    "External OCR tool failures",
    ["tool", "reason"],  # reason: error, timeout, io_error
)

SUPPORTED_IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".tif", ".tiff", ".bmp", ".webp"})
SUPPORTED_PDF_EXTENSIONS = frozenset({".pdf"})


class OCRResult(BaseModel):
    """Result of OCR operation.

    Attributes:
        text: Extracted text content (empty on failure)
        success: Whether operation succeeded
        error: Error message if operation failed
        timed_out: Whether the failure was a tool timeout
    """

    text: str
    success: bool
    error: str | None = None
    timed_out: bool = False


class OCRService:
    """OCR text provider backed by external Tesseract/pdftoppm processes."""

    def __init__(self, settings: Settings) -> None:
        """Initialize OCR service.

        Args:
            settings: Application settings
        """
        self.settings = settings

    def is_available(self) -> bool:
        """Check if both external tools are on PATH.

        Returns:
            True if tesseract and pdftoppm can be found
        """
        return all(
            shutil.which(cmd) is not None
            for cmd in (self.settings.tesseract_cmd, self.settings.pdftoppm_cmd)
        )

    @staticmethod
    def is_supported(file_name: str) -> bool:
        """Check if the file type can be OCR'd."""
        extension = Path(file_name).suffix.lower()
        return extension in SUPPORTED_IMAGE_EXTENSIONS or extension in SUPPORTED_PDF_EXTENSIONS

    def extract_text(self, file_bytes: bytes, file_name: str) -> OCRResult:
        """Extract text from an uploaded image or PDF.

        Unsupported file types return an empty, unsuccessful result without
        starting any process. Tool failures and timeouts are logged and also
        yield empty text; they never raise.

        Args:
            file_bytes: File content
            file_name: Original file name (the extension selects the handling)

        Returns:
            OCRResult with recognized text or error information
        """
        extension = Path(file_name).suffix.lower()
        if not extension:
            logger.warning(f"File '{file_name}' has no extension; OCR skipped")
            return OCRResult(text="", success=False, error="File has no extension")

        if not self.is_supported(file_name):
            logger.warning(f"File type '{extension}' is not supported for OCR")
            return OCRResult(text="", success=False, error=f"Unsupported file type: {extension}")

        start_time = time.time()
        try:
            with temporary_workspace(self.settings.ocr_temp_dir) as workspace:
                input_path = workspace / f"input{extension}"
                input_path.write_bytes(file_bytes)

                if extension in SUPPORTED_PDF_EXTENSIONS:
                    image_path = self._rasterize_first_page(input_path, workspace)
                else:
                    image_path = input_path

                text = self._recognize(image_path)

        except ToolTimeoutError as e:
            ocr_tool_failures_total.labels(tool=e.tool, reason="timeout").inc()
            logger.error(f"OCR timed out for '{file_name}': {e}")
            return OCRResult(text="", success=False, error=str(e), timed_out=True)

        except ToolError as e:
            ocr_tool_failures_total.labels(tool=e.tool, reason="error").inc()
            logger.error(f"OCR failed for '{file_name}': {e}")
            return OCRResult(text="", success=False, error=str(e))

        except OSError as e:
            ocr_tool_failures_total.labels(tool="workspace", reason="io_error").inc()
            logger.error(f"OCR workspace I/O failed for '{file_name}': {e}")
            return OCRResult(text="", success=False, error=f"Workspace I/O error: {e}")

        finally:
            ocr_processing_duration_seconds.observe(time.time() - start_time)

        logger.info(f"OCR finished for '{file_name}': {len(text)} characters recognized")
        return OCRResult(text=text, success=True)

    def _rasterize_first_page(self, pdf_path: Path, workspace: Path) -> Path:
        """Convert the first PDF page to PNG with pdftoppm.

        Raises:
            ToolError: If pdftoppm fails or produces no image
        """
        output_prefix = workspace / "page"
        run_tool(
            [
                self.settings.pdftoppm_cmd,
                "-png",
                "-r",
                str(self.settings.ocr_pdf_dpi),
                "-f",
                "1",
                "-l",
                "1",
                str(pdf_path),
                str(output_prefix),
            ],
            timeout=self.settings.ocr_timeout_seconds,
        )

        # pdftoppm pads the page number to the width of the page count
        for candidate in (workspace / "page-1.png", workspace / "page-01.png"):
            if candidate.exists():
                return candidate

        pages = sorted(workspace.glob("page-*.png"))
        if pages:
            return pages[0]

        raise ToolError(
            self.settings.pdftoppm_cmd,
            "pdftoppm produced no output image; the PDF may be empty or damaged",
        )

    def _recognize(self, image_path: Path) -> str:
        """Run Tesseract on an image and return its stdout text.

        Raises:
            ToolError: If tesseract fails
        """
        output = run_tool(
            [self.settings.tesseract_cmd, str(image_path), "stdout", "-l", self.settings.ocr_language],
            timeout=self.settings.ocr_timeout_seconds,
        )
        return output.stdout.strip()
