"""
Sanitization Utility Module
Provides functions to sanitize inputs for safe logging and display.
"""

import re
import unicodedata

ANSI_ESCAPE_PATTERN = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')


def sanitize_for_logging(text: str, max_length: int = 255) -> str:
    """
    Sanitize text for safe logging to prevent Log Injection (CRLF) and terminal manipulation.

    Subjects and sender names come straight from remote mail servers, so they
    are untrusted input by the time they reach a log line.

    Args:
        text: The input string to sanitize.
        max_length: Maximum allowed length for the log entry (truncates if longer).

    Returns:
        Sanitized string safe for logging.
    """
    if not text:
        return ""

    text = unicodedata.normalize('NFKC', text)

    text = text.replace('\n', '\\n').replace('\r', '\\r')

    # Remove ANSI escape sequences (for terminal colors/cursor movement)
    text = ANSI_ESCAPE_PATTERN.sub('', text)

    # Remove other non-printable control characters (ASCII 0-31 except tab)
    text = "".join(ch for ch in text if ch == '\t' or ord(ch) >= 32)

    if len(text) > max_length:
        text = text[:max_length] + "..."

    return text


def redact_email(address: str) -> str:
    """
    Mask the local part of an email address for logs.

    Example:
        >>> redact_email("alice@example.com")
        'a***@example.com'
    """
    if not address:
        return ""

    address = sanitize_for_logging(address)
    local, sep, domain = address.partition("@")
    if not sep:
        return local[:1] + "***"
    return f"{local[:1]}***@{domain}"
