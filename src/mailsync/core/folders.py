"""Folder discovery: modified UTF-7 names and special-use/localized matching."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from imapclient import imap_utf7

from mailsync.core.models import ALL_MAIL, SENT, FolderSelector, MailFolder

if TYPE_CHECKING:
    from mailsync.core.session import ImapSession

logger = logging.getLogger(__name__)


def decode_modified_utf7(name: str) -> str:
    """Decode an IMAP mailbox name from modified UTF-7 (RFC 3501 5.1.3).

    Names that are not valid modified UTF-7 are returned verbatim.
    """
    if "&" not in name or not name.isascii():
        return name
    try:
        return imap_utf7.decode(name.encode("ascii"))
    except UnicodeDecodeError:
        logger.debug("Malformed modified UTF-7 in %r", name)
        return name


def encode_modified_utf7(text: str) -> str:
    """Encode a Unicode folder name into its modified UTF-7 wire form."""
    return imap_utf7.encode(text).decode("ascii")


class FolderResolver:
    """Finds folders by special-use attribute first, then by localized name."""

    def __init__(self, selectors: Iterable[FolderSelector] = (ALL_MAIL, SENT)) -> None:
        self._selectors = tuple(selectors)

    def match(self, folders: list[MailFolder], selector: FolderSelector) -> MailFolder | None:
        """Pick the folder for a selector.

        An attribute match anywhere in the listing wins over any name match.
        Within a tier the first folder in listing order wins.
        """
        wanted = selector.attribute.lower()
        for folder in folders:
            if any(attr.lower() == wanted for attr in folder.attributes):
                logger.info("Found %s folder by attribute: %s", selector.role, folder.display_name)
                return folder

        for folder in folders:
            if self._matches_name(folder, selector):
                logger.info("Found %s folder by name: %s", selector.role, folder.display_name)
                return folder

        logger.debug(
            "No %s folder among: %s", selector.role, [f.display_name for f in folders]
        )
        return None

    def classify(self, folder: MailFolder) -> list[str]:
        """Roles whose attribute or name patterns match a single folder."""
        roles = []
        for selector in self._selectors:
            wanted = selector.attribute.lower()
            if any(attr.lower() == wanted for attr in folder.attributes):
                roles.append(selector.role)
            elif self._matches_name(folder, selector):
                roles.append(selector.role)
        return roles

    @staticmethod
    def _matches_name(folder: MailFolder, selector: FolderSelector) -> bool:
        display = folder.display_name.lower()
        return any(pattern.lower() in display for pattern in selector.name_patterns)


def find_folder(session: ImapSession, selector: FolderSelector) -> str | None:
    """Return the wire name of the folder matching selector, or None."""
    folder = FolderResolver().match(session.list_folders(), selector)
    return folder.name if folder else None
