"""
Document Builder Module
Turns raw RFC822 messages into index Documents
"""

import email
import email.utils
import hashlib
import html
import logging
import re
from datetime import timezone
from email.header import decode_header, make_header
from email.message import Message
from email.utils import getaddresses
from typing import List, Optional, Sequence

from ..utils.config import MailAccount
from ..utils.sanitization import sanitize_for_logging
from ..utils.security_validators import MAX_BODY_CHARS, validate_subject_length
from .models import Document, utc_now


logger = logging.getLogger(__name__)

HTML_TAG_PATTERN = re.compile(r"<[^>]+>")
HTML_DROP_PATTERN = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
WHITESPACE_PATTERN = re.compile(r"[ \t]+")


def document_id(account_id: str, message_key: str) -> str:
    """
    Stable id for a message within an account.

    The same message seen twice (reconnect, re-sync) maps to the same id, so
    the store overwrites instead of duplicating.
    """
    digest = hashlib.sha256(f"{account_id}\x00{message_key}".encode("utf-8"))
    return digest.hexdigest()


class DocumentBuilder:
    """Builds Documents for one account"""

    def __init__(self, account: MailAccount):
        self.account = account
        self.logger = logging.getLogger(f"DocumentBuilder.{account.account_id}")

    def build(
        self,
        raw_email: bytes,
        folder: str,
        uid: str,
        flags: Sequence[str] = (),
    ) -> Optional[Document]:
        """
        Parse raw email into a Document

        Args:
            raw_email: Raw RFC822 bytes
            folder: Source folder
            uid: IMAP UID within the folder
            flags: IMAP flags reported with the message

        Returns:
            Document, or None if the message cannot be parsed. Unparseable
            messages are dropped here and never indexed as partial records.
        """
        if not raw_email:
            self.logger.warning(f"Dropping empty message {uid} in {sanitize_for_logging(folder)}")
            return None

        try:
            msg = email.message_from_bytes(raw_email)
        except Exception as e:
            self.logger.warning(f"Dropping unparseable message {uid}: {e}")
            return None

        if not msg.keys():
            self.logger.warning(
                f"Dropping message {uid} in {sanitize_for_logging(folder)}: no headers found"
            )
            return None

        try:
            message_id = (msg.get("Message-ID") or "").strip()
            subject = validate_subject_length(self._decode_header_value(msg.get("Subject", "")))
            body, has_attachments = self._extract_body(msg)

            cc_header = msg.get_all("Cc")
            return Document(
                id=document_id(self.account.account_id, message_id or f"{folder}:{uid}"),
                account_id=self.account.account_id,
                folder=folder,
                subject=subject or "(No Subject)",
                body=body[:MAX_BODY_CHARS],
                sender=self._format_addresses(msg.get_all("From", [])),
                recipients=self._addresses(msg.get_all("To", [])),
                cc=self._addresses(cc_header) if cc_header else None,
                date=self._parse_date(msg.get("Date", "")),
                has_attachments=has_attachments,
                flags=list(flags),
            )
        except Exception as e:
            self.logger.warning(f"Dropping message {uid}: could not build document: {e}")
            return None

    def _extract_body(self, msg: Message):
        """Return (plain-text body, has_attachments)"""
        text_parts: List[str] = []
        html_parts: List[str] = []
        has_attachments = False

        for part in msg.walk():
            if part.is_multipart():
                continue

            disposition = str(part.get("Content-Disposition", "")).lower()
            if "attachment" in disposition or part.get_filename():
                has_attachments = True
                continue

            content_type = part.get_content_type()
            if content_type == "text/plain":
                text_parts.append(self._decode_part_payload(part))
            elif content_type == "text/html":
                html_parts.append(self._decode_part_payload(part))

        if text_parts:
            return "".join(text_parts).strip(), has_attachments
        if html_parts:
            return self._html_to_text("".join(html_parts)), has_attachments
        return "", has_attachments

    @staticmethod
    def _html_to_text(markup: str) -> str:
        text = HTML_DROP_PATTERN.sub("", markup)
        text = re.sub(r"<br\s*/?>|</p>|</div>", "\n", text, flags=re.IGNORECASE)
        text = html.unescape(HTML_TAG_PATTERN.sub("", text))
        lines = [WHITESPACE_PATTERN.sub(" ", line).strip() for line in text.splitlines()]
        return "\n".join(line for line in lines if line)

    @staticmethod
    def _parse_date(value: str):
        try:
            parsed = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return utc_now()
        if parsed is None:
            return utc_now()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @staticmethod
    def _decode_header_value(value: str) -> str:
        if not value:
            return ""
        try:
            return str(make_header(decode_header(value)))
        except Exception:
            return str(value)

    @classmethod
    def _addresses(cls, header_values: List[str]) -> List[str]:
        return [address for _, address in getaddresses(header_values) if address]

    @classmethod
    def _format_addresses(cls, header_values: List[str]) -> str:
        formatted = []
        for name, address in getaddresses(header_values):
            name_clean = cls._decode_header_value(name)
            if name_clean and address:
                formatted.append(f"{name_clean} <{address}>")
            elif address:
                formatted.append(address)
            elif name_clean:
                formatted.append(name_clean)
        return ", ".join(formatted)

    @staticmethod
    def _decode_part_payload(part: Message) -> str:
        payload = part.get_payload(decode=True)
        if not payload:
            return ""
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except LookupError:
            return payload.decode("utf-8", errors="replace")
