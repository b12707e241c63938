import io
from typing import Tuple

import docx  # python-docx
import fitz  # PyMuPDF

from cobra_chat.services.semantic_cache import FileContext
from cobra_chat.utils.errors import ExtractionError
from cobra_chat.utils.logger import logger

PDF_TYPE = "application/pdf"
DOC_TYPE = "application/msword"
DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

ALLOWED_TYPES = {PDF_TYPE, DOC_TYPE, DOCX_TYPE}
ALLOWED_EXTENSIONS = {"pdf", "doc", "docx"}


def _extension(filename: str) -> str:
    return filename.lower().rsplit(".", 1)[-1] if "." in filename else ""


class DocumentProcessorService:
    def __init__(self, max_file_size_mb: int = 10, max_chars: int = 60000):
        self.max_bytes = max_file_size_mb * 1024 * 1024
        self.max_chars = max_chars

    def validate(self, filename: str, content_type: str, size: int) -> Tuple[bool, str]:
        """Checks type and size before anything is read or sent anywhere."""
        if not filename:
            return False, "File name is missing."

        if content_type not in ALLOWED_TYPES and _extension(filename) not in ALLOWED_EXTENSIONS:
            return False, "Please upload only PDF or DOC files."

        if size <= 0:
            return False, "File is empty."

        if size > self.max_bytes:
            return False, f"File exceeds the {self.max_bytes // (1024 * 1024)}MB limit."

        return True, "Valid document"

    def extract(self, filename: str, content_type: str, data: bytes) -> FileContext:
        """Extracts plain text. Raises ExtractionError with a readable reason."""
        is_pdf = content_type == PDF_TYPE or _extension(filename) == "pdf"
        text = self._extract_pdf(data) if is_pdf else self._extract_word(data)

        # Collapse whitespace
        text = " ".join(text.split())
        if not text:
            raise ExtractionError("No text could be extracted from this document. It may be image-based or empty.")

        if len(text) > self.max_chars:
            logger.info(f"Truncating {filename} from {len(text)} to {self.max_chars} characters")
            text = text[:self.max_chars]

        return FileContext(name=filename, size=len(data), content=text, mime_type=content_type)

    def _extract_pdf(self, data: bytes) -> str:
        try:
            doc = fitz.open(stream=data, filetype="pdf")
            try:
                return "\n".join(page.get_text("text") for page in doc)
            finally:
                doc.close()
        except Exception as e:
            logger.error(f"PDF extraction error: {str(e)}")
            raise ExtractionError(f"Failed to read PDF: {str(e)}") from e

    def _extract_word(self, data: bytes) -> str:
        try:
            document = docx.Document(io.BytesIO(data))
        except Exception as e:
            # Legacy binary .doc files end up here as well
            logger.error(f"DOC extraction error: {str(e)}")
            raise ExtractionError(f"Failed to read DOC file: {str(e)}") from e

        parts = [paragraph.text for paragraph in document.paragraphs]
        for table in document.tables:
            for row in table.rows:
                parts.extend(cell.text for cell in row.cells)
        return "\n".join(parts)
