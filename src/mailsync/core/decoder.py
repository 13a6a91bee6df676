"""Raw RFC 822 message decoder: MIME tree walking, body and attachment extraction."""

from __future__ import annotations

import email
import html
import logging
import mimetypes
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from email.header import Header, decode_header
from email.message import Message
from email.utils import collapse_rfc2231_value

import trafilatura

from mailsync.core.exceptions import ParseError
from mailsync.core.headers import (
    decode_bytes,
    decode_encoded_words,
    decode_filename,
    parse_address,
    parse_date,
    unfold,
)
from mailsync.core.models import AttachmentDescriptor, NormalizedMessage, ParseFailure, RawMessage

logger = logging.getLogger(__name__)

MAX_PART_DEPTH = 32
PREVIEW_LENGTH = 200

_TAG = re.compile(r"<[^>]+>")
_HIDDEN_BLOCK = re.compile(r"<(script|style)\b.*?</\1>", re.IGNORECASE | re.DOTALL)


def _fix_surrogates(value: str) -> str:
    """Re-decode raw 8-bit header bytes (kept as surrogates) as UTF-8."""
    try:
        value.encode("utf-8")
        return value
    except UnicodeEncodeError:
        return value.encode("utf-8", "surrogateescape").decode("utf-8", errors="replace")


class MessageDecoder:
    """Decodes RawMessage bytes into NormalizedMessage records."""

    def __init__(self, max_depth: int = MAX_PART_DEPTH, preview_length: int = PREVIEW_LENGTH) -> None:
        self._max_depth = max_depth
        self._preview_length = preview_length

    def decode(self, raw: RawMessage) -> NormalizedMessage:
        """Decode one raw message.

        Args:
            raw: Message bytes and UID as fetched from the server.

        Returns:
            The normalized message.

        Raises:
            ParseError: If the message is empty, has no sender address, or
                cannot be parsed at all.
        """
        if not raw.body or not raw.body.strip():
            raise ParseError(f"Message UID {raw.uid} is empty")

        try:
            msg = email.message_from_bytes(raw.body)

            from_name, from_email = parse_address(self._header(msg, "From"))
            if not from_email:
                raise ParseError(f"Message UID {raw.uid} has no From address")
            to_name, to_email = parse_address(self._header(msg, "To"))

            subject = self._header(msg, "Subject")
            if subject is not None:
                subject = decode_encoded_words(unfold(subject)).strip()

            message_id = (self._header(msg, "Message-ID") or "").strip() or None

            received_at = parse_date(self._header(msg, "Date"))
            if received_at is None:
                received_at = datetime.now(UTC)

            body_text, body_html, attachments = self._walk(msg, raw.uid)

            return NormalizedMessage(
                uid=raw.uid,
                from_email=from_email,
                from_name=from_name,
                to_email=to_email,
                to_name=to_name,
                subject=subject,
                body_text=body_text,
                body_html=body_html,
                message_id=message_id,
                received_at=received_at,
                attachments=tuple(attachments),
                preview=self._preview(body_text, body_html),
            )
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Failed to parse message UID {raw.uid}: {e}") from e

    @staticmethod
    def _header(msg: Message, name: str) -> str | None:
        value = msg.get(name)
        if value is None:
            return None
        if isinstance(value, Header):
            # Raw 8-bit header bytes come back wrapped; recover them as UTF-8.
            return "".join(
                decode_bytes(chunk, "utf-8") if isinstance(chunk, bytes) else chunk
                for chunk, _ in decode_header(value)
            )
        return _fix_surrogates(str(value))

    def _walk(
        self, root: Message, uid: int
    ) -> tuple[str | None, str | None, list[AttachmentDescriptor]]:
        """Depth-first walk of the MIME tree using an explicit stack.

        The first non-attachment text/plain and text/html parts become the
        bodies. Attachment parts are collected and not descended into.
        """
        body_text: str | None = None
        body_html: str | None = None
        attachments: list[AttachmentDescriptor] = []

        stack: list[tuple[Message, int]] = [(root, 0)]
        while stack:
            part, depth = stack.pop()
            if depth > self._max_depth:
                logger.warning("UID %d: ignoring MIME part nested deeper than %d", uid, self._max_depth)
                continue

            content_type = part.get_content_type()
            if self._is_attachment(part, content_type):
                attachments.append(self._to_attachment(part, content_type, len(attachments) + 1))
                continue

            if part.is_multipart():
                children = part.get_payload()
                stack.extend((child, depth + 1) for child in reversed(children))
                continue

            if content_type == "text/plain" and body_text is None:
                body_text = self._text_payload(part)
            elif content_type == "text/html" and body_html is None:
                body_html = self._text_payload(part)

        return body_text, body_html, attachments

    @staticmethod
    def _is_attachment(part: Message, content_type: str) -> bool:
        if part.get_content_disposition() == "attachment":
            return True
        maintype = content_type.split("/", 1)[0]
        return maintype not in ("text", "multipart") and part.get_param("name") is not None

    def _to_attachment(self, part: Message, content_type: str, index: int) -> AttachmentDescriptor:
        filename = self._filename(part)
        if not filename:
            extension = mimetypes.guess_extension(content_type) or ""
            filename = f"attachment-{index}{extension}"

        if part.is_multipart():
            # Attached messages (message/rfc822) are kept whole.
            inner = part.get_payload()
            payload = inner[0].as_bytes() if inner else b""
        else:
            payload = part.get_payload(decode=True) or b""

        return AttachmentDescriptor(
            filename=filename,
            mime_type=content_type,
            size=len(payload),
            payload=payload,
        )

    @staticmethod
    def _filename(part: Message) -> str | None:
        """Filename from the disposition, then the content-type ``name``."""
        value = part.get_param("filename", header="content-disposition")
        if value is None:
            value = part.get_param("name")
        if value is None:
            return None

        if isinstance(value, tuple):
            text = collapse_rfc2231_value(value, errors="replace", fallback_charset="utf-8")
        else:
            text = str(value)
        return decode_filename(unfold(_fix_surrogates(text))).strip() or None

    @staticmethod
    def _text_payload(part: Message) -> str:
        payload = part.get_payload(decode=True)
        if not payload:
            return ""
        return decode_bytes(payload, part.get_content_charset())

    def _preview(self, body_text: str | None, body_html: str | None) -> str:
        source = body_text
        if not source and body_html:
            try:
                source = trafilatura.extract(body_html, output_format="txt", favor_recall=True)
            except Exception as e:
                logger.warning("Trafilatura extraction failed: %s", e)
                source = None
            if not source:
                source = html.unescape(_TAG.sub(" ", _HIDDEN_BLOCK.sub(" ", body_html)))

        if not source:
            return ""
        return " ".join(source.split())[: self._preview_length]


def decode_batch(
    raws: Iterable[RawMessage], decoder: MessageDecoder | None = None
) -> tuple[list[NormalizedMessage], list[ParseFailure]]:
    """Decode a batch, isolating failures so one bad message never aborts the rest."""
    decoder = decoder or MessageDecoder()
    messages: list[NormalizedMessage] = []
    failures: list[ParseFailure] = []

    for raw in raws:
        try:
            messages.append(decoder.decode(raw))
        except ParseError as e:
            logger.warning("Skipping undecodable message UID %d: %s", raw.uid, e)
            failures.append(ParseFailure(uid=raw.uid, reason=str(e)))

    return messages, failures
