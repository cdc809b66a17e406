"""
Security Validators Module
TLS settings and download limits for mailbox sessions

SECURITY STORY: These limits protect the ingestion side:
- TLS 1.2+ with hostname checks protects the IMAP credentials in transit
- MAX_EMAIL_SIZE stops a single huge message from exhausting memory
- MAX_SUBJECT_LENGTH keeps pathological headers out of the index
"""

import ssl
import logging

# Messages above this size are skipped before download
MAX_EMAIL_SIZE = 50 * 1024 * 1024

MAX_SUBJECT_LENGTH = 1024

# Plain-text bodies above this size are truncated before indexing
MAX_BODY_CHARS = 1024 * 1024

logger = logging.getLogger(__name__)


def create_secure_ssl_context(verify_ssl: bool = True) -> ssl.SSLContext:
    """
    Create a secure SSL context with modern TLS settings

    Args:
        verify_ssl: When False, hostname checking and certificate validation
            are disabled. Only for test servers with self-signed certificates.

    Returns:
        Configured SSL context
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2

    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    context.load_default_certs()

    if not verify_ssl:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        logger.warning("SSL verification disabled - use only for testing!")

    logger.debug("Created secure SSL context with TLS 1.2+ enforcement")
    return context


def validate_subject_length(subject: str) -> str:
    """
    Truncate a subject that exceeds MAX_SUBJECT_LENGTH

    Args:
        subject: Decoded subject line

    Returns:
        The subject, truncated if necessary
    """
    if subject and len(subject) > MAX_SUBJECT_LENGTH:
        logger.warning(
            f"Subject length {len(subject)} exceeds {MAX_SUBJECT_LENGTH}; truncating"
        )
        return subject[:MAX_SUBJECT_LENGTH]
    return subject
