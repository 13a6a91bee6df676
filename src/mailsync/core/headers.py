"""Header decoding: RFC 2047 encoded words, charsets, addresses, filenames, dates."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from datetime import UTC, datetime
from email.utils import getaddresses, parsedate_to_datetime
from urllib.parse import unquote_to_bytes

logger = logging.getLogger(__name__)

_ENCODED_WORD = re.compile(r"=\?([^?\s]+)\?([BbQq])\?([^?]*)\?=")
_QP_ESCAPE = re.compile(rb"=([0-9A-Fa-f]{2})")
_FOLD = re.compile(r"\r?\n(?=[ \t])")
_TRAILING_COMMENT = re.compile(r"\s*\([^()]*\)\s*$")
_ANGLE_ADDR = re.compile(r"<\s*([^<>\s@]+@[^<>\s]+)\s*>")
_BARE_ADDR = re.compile(r"[\w.!#$%&'*+/=?^`{|}~-]+@[\w-]+(?:\.[\w-]+)*")

# Charset labels seen in the wild mapped to the Python codec that decodes
# them the way mail clients do.
_CHARSET_ALIASES = {
    "utf-8": "utf-8",
    "utf8": "utf-8",
    "iso-2022-jp": "iso2022_jp_ext",
    "csiso2022jp": "iso2022_jp_ext",
    "shift_jis": "cp932",
    "shift-jis": "cp932",
    "sjis": "cp932",
    "x-sjis": "cp932",
    "windows-31j": "cp932",
    "cp932": "cp932",
    "euc-jp": "euc_jp",
    "x-euc-jp": "euc_jp",
    "iso-8859-1": "cp1252",
    "latin1": "cp1252",
    "latin-1": "cp1252",
    "us-ascii": "cp1252",
    "ascii": "cp1252",
}

_FALLBACK_DATE_FORMATS = (
    "%a, %d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %z",
    "%a, %d %b %Y %H:%M:%S",
    "%d %b %Y %H:%M:%S",
    "%a, %d %b %Y %H:%M %z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S",
)


def unfold(value: str) -> str:
    """Remove header line folding."""
    return _FOLD.sub("", value)


def normalize_charset(charset: str | None) -> str:
    """Map a MIME charset label to a Python codec name (UTF-8 when unknown)."""
    if not charset:
        return "utf-8"
    label = charset.strip().strip('"').lower()
    # RFC 2231 allows a language suffix: utf-8*ja
    label = label.split("*", 1)[0]
    return _CHARSET_ALIASES.get(label, label)


def decode_bytes(data: bytes, charset: str | None) -> str:
    """Decode bytes in the given charset, replacing malformed sequences."""
    codec = normalize_charset(charset)
    try:
        return data.decode(codec, errors="replace")
    except (LookupError, UnicodeError):
        logger.debug("Unusable charset %r, decoding as UTF-8", charset)
        return data.decode("utf-8", errors="replace")


def _decode_word(charset: str, encoding: str, text: str) -> str:
    if encoding.upper() == "B":
        padded = text + "=" * (-len(text) % 4)
        raw = base64.b64decode(padded)
        return decode_bytes(raw, charset)

    raw = _QP_ESCAPE.sub(
        lambda m: bytes([int(m.group(1), 16)]), text.encode("ascii", errors="replace")
    )
    return decode_bytes(raw, charset).replace("_", " ")


def decode_encoded_words(value: str) -> str:
    """Decode every RFC 2047 ``=?charset?encoding?text?=`` run in value.

    Whitespace between two adjacent encoded words is dropped. A run that
    cannot be decoded is kept as-is.
    """
    if "=?" not in value:
        return value

    value = unfold(value)
    parts: list[str] = []
    last_end = 0
    previous_was_word = False

    for match in _ENCODED_WORD.finditer(value):
        gap = value[last_end : match.start()]
        try:
            decoded = _decode_word(*match.groups())
        except (binascii.Error, ValueError) as e:
            logger.debug("Leaving undecodable encoded word %r: %s", match.group(0), e)
            parts.append(gap)
            parts.append(match.group(0))
            previous_was_word = False
        else:
            if not (previous_was_word and gap.strip() == ""):
                parts.append(gap)
            parts.append(decoded)
            previous_was_word = True
        last_end = match.end()

    parts.append(value[last_end:])
    return "".join(parts)


def parse_address(value: str | None) -> tuple[str | None, str | None]:
    """Extract ``(display name, email)`` of the first address in a header.

    Understands ``"Name" <email>`` and bare ``email``. Either element is None
    when absent.
    """
    if not value:
        return None, None

    value = unfold(value).strip()
    for name, addr in getaddresses([value]):
        if "@" in addr:
            name = decode_encoded_words(name).strip()
            return name or None, addr.strip()

    # getaddresses gives up on some malformed headers; salvage the address.
    match = _ANGLE_ADDR.search(value) or _BARE_ADDR.search(value)
    if match is None:
        return None, None
    addr = match.group(1) if match.re is _ANGLE_ADDR else match.group(0)
    name = decode_encoded_words(value[: match.start()].strip().strip('"').strip())
    return name or None, addr


def decode_filename(value: str) -> str:
    """Remove transport encoding from an attachment filename.

    RFC 2047 encoded words are decoded first; otherwise an RFC 2231
    ``charset''percent-encoded`` value is unquoted.
    """
    if "=?" in value:
        return decode_encoded_words(value)

    if "''" in value:
        charset, _, encoded = value.partition("''")
        return decode_bytes(unquote_to_bytes(encoded), charset or "utf-8")

    return value


def parse_date(value: str | None) -> datetime | None:
    """Parse a Date header into an aware UTC datetime, or None.

    RFC 2822 is tried first, then a few common non-conforming layouts.
    Dates without a zone are taken as UTC.
    """
    if not value:
        return None

    text = _TRAILING_COMMENT.sub("", unfold(value)).strip()
    parsed: datetime | None = None

    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        parsed = None

    if parsed is None:
        for fmt in _FALLBACK_DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        logger.warning("Failed to parse date: %s", value)
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
