"""
Input sanitization for the few free-text fields we accept.

Covers credential names, transfer titles and uploaded file names. Secrets
themselves are never sanitized; they go to the codec as-is.
"""
import re
from typing import Optional


class InputSanitizer:
    """Validates and cleans user-supplied labels."""

    CONTROL_CHAR_PATTERN = re.compile(r'[\x00-\x1f\x7f]')
    SCRIPT_PATTERN = re.compile(r'<script|javascript:|onerror|onclick|<iframe|<embed', re.IGNORECASE)
    FILENAME_UNSAFE_PATTERN = re.compile(r'[^\w.\-() ]', re.UNICODE)

    @staticmethod
    def sanitize_label(value: str, max_length: Optional[int] = None) -> str:
        """
        Single-line display label (API key / webhook name, transfer title).

        Raises:
            ValueError: control characters, markup, or too long once trimmed
        """
        if not isinstance(value, str):
            raise ValueError("Input must be string")

        value = value.strip()

        if InputSanitizer.CONTROL_CHAR_PATTERN.search(value):
            raise ValueError("Control characters not allowed")

        if InputSanitizer.SCRIPT_PATTERN.search(value):
            raise ValueError("Script/XSS patterns not allowed")

        if max_length and len(value) > max_length:
            raise ValueError(f"Input exceeds max length of {max_length}")

        return value

    @staticmethod
    def sanitize_filename(filename: str) -> str:
        """Reduce an uploaded name to a safe basename; never empty."""
        filename = (filename or "").replace('\\', '/').split('/')[-1]
        filename = InputSanitizer.CONTROL_CHAR_PATTERN.sub('', filename)
        filename = InputSanitizer.FILENAME_UNSAFE_PATTERN.sub('_', filename)
        filename = re.sub(r'[ ]{2,}', ' ', filename).strip(' .')

        if not filename:
            return "file"
        if len(filename) > 255:
            stem, dot, ext = filename.rpartition('.')
            if dot and len(ext) <= 16:
                filename = f"{stem[:255 - len(ext) - 1]}.{ext}"
            else:
                filename = filename[:255]
        return filename
