"""
Error types raised by the indexing pipeline
"""

from typing import List, Optional


class IndexerError(Exception):
    """Base class for indexing pipeline errors"""


class StoreError(IndexerError):
    """A single call to the document store failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BulkRequestError(IndexerError):
    """
    The whole bulk call was rejected.

    Distinct from item-level failures: nothing in the request is known to
    have been applied, so the caller may resubmit the full batch.
    """

    retryable = True

    def __init__(self, message: str, document_ids: Optional[List[str]] = None):
        super().__init__(message)
        self.document_ids = document_ids or []


class FlushError(IndexerError):
    """Documents were still unwritten when the indexer shut down"""

    def __init__(self, message: str, documents: Optional[list] = None):
        super().__init__(message)
        self.documents = documents or []
