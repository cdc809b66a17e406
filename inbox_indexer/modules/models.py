"""
Core Data Model
Documents, connection lifecycle states and the events passed between components
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


DEFAULT_CATEGORY = "Uncategorized"

EMAIL_CATEGORIES = (
    "Interested",
    "Meeting Booked",
    "Not Interested",
    "Spam",
    "Out of Office",
    DEFAULT_CATEGORY,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Document:
    """
    One ingested message as stored in the index.

    The id is the idempotency key for every store write: re-submitting the
    same id overwrites the stored copy.
    """
    id: str
    account_id: str
    folder: str
    subject: str
    body: str
    sender: str
    recipients: List[str]
    date: datetime
    cc: Optional[List[str]] = None
    category: str = DEFAULT_CATEGORY
    indexed_at: datetime = field(default_factory=utc_now)
    has_attachments: bool = False
    flags: List[str] = field(default_factory=list)

    def to_source(self) -> Dict[str, Any]:
        """Render the JSON body stored under this document's id"""
        source = {
            "id": self.id,
            "account_id": self.account_id,
            "folder": self.folder,
            "subject": self.subject,
            "body": self.body,
            "sender": self.sender,
            "recipients": list(self.recipients),
            "date": self.date.isoformat(),
            "category": self.category,
            "indexed_at": self.indexed_at.isoformat(),
            "has_attachments": self.has_attachments,
            "flags": list(self.flags),
        }
        if self.cc is not None:
            source["cc"] = list(self.cc)
        return source

    @classmethod
    def from_source(cls, source: Dict[str, Any]) -> "Document":
        """Rebuild a Document from a stored JSON body"""
        return cls(
            id=source["id"],
            account_id=source.get("account_id", ""),
            folder=source.get("folder", ""),
            subject=source.get("subject", ""),
            body=source.get("body", ""),
            sender=source.get("sender", ""),
            recipients=list(source.get("recipients") or []),
            date=datetime.fromisoformat(source["date"]) if source.get("date") else utc_now(),
            cc=source.get("cc"),
            category=source.get("category", DEFAULT_CATEGORY),
            indexed_at=(
                datetime.fromisoformat(source["indexed_at"])
                if source.get("indexed_at") else utc_now()
            ),
            has_attachments=bool(source.get("has_attachments", False)),
            flags=list(source.get("flags") or []),
        )


class ConnectionStatus(str, Enum):
    """Lifecycle states of one supervised account"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    ERROR = "error"
    RECONNECTING = "reconnecting"
    PERMANENTLY_FAILED = "permanently_failed"
    # Returned for account ids the supervisor does not know
    NOT_FOUND = "not_found"


class SignalKind(str, Enum):
    """Internal signals a session reports to its supervisor"""
    READY = "ready"
    ERROR = "error"
    END = "end"
    TIMEOUT = "timeout"
    DOCUMENT = "document"


@dataclass
class SessionSignal:
    """
    A signal from one session incarnation.

    generation identifies the incarnation; the supervisor ignores signals
    from incarnations it has already replaced.
    """
    kind: SignalKind
    account_id: str
    generation: int
    payload: Any = None


@dataclass
class AccountReady:
    """Outbound: an account reached the ready state"""
    account_id: str


@dataclass
class AccountFailed:
    """Outbound: an account exhausted its retry budget (terminal)"""
    account_id: str
    cause: Optional[BaseException] = None


@dataclass
class DocumentReady:
    """Outbound: a new message was observed and built into a Document"""
    document: Document


@dataclass
class BulkItemError:
    """A single rejected item inside an otherwise successful bulk call"""
    document_id: str
    error: Any


@dataclass
class BulkResult:
    """Per-item outcome of a bulk upsert"""
    success: int = 0
    failed: int = 0
    errors: List[BulkItemError] = field(default_factory=list)


@dataclass
class IndexStats:
    """Read-only aggregate over the index"""
    total_emails: int
    index_size: str
    category_counts: Dict[str, int]


@dataclass
class SearchQuery:
    """Minimal filtering contract exposed to callers"""
    query: Optional[str] = None
    account_id: Optional[str] = None
    folder: Optional[str] = None
    category: Optional[str] = None
    offset: int = 0
    size: int = 20


@dataclass
class SearchResult:
    total: int
    emails: List[Document]
