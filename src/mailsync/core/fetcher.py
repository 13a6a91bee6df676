"""Incremental UID-based fetching with a backlog cap on first sync."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from mailsync.core.models import RawMessage
from mailsync.core.session import ImapSession

logger = logging.getLogger(__name__)

INITIAL_SYNC_LIMIT = 100
FETCH_ITEMS = ["UID", "FLAGS", "BODY[]"]


def fetch_since(
    session: ImapSession,
    last_uid: int,
    *,
    initial_limit: int = INITIAL_SYNC_LIMIT,
) -> list[RawMessage]:
    """Fetch messages in the selected folder with UID greater than last_uid.

    ``last_uid == 0`` means the folder was never synced: only the
    ``initial_limit`` highest UIDs are fetched. Differential syncs are never
    capped. Results are in ascending UID order.

    Raises:
        FetchError: On protocol-level failures.
        FolderError: If no folder is selected.
    """
    if last_uid == 0:
        uids = session.search_uids("ALL")
        if not uids:
            logger.debug("Folder %s is empty", session.selected_folder)
            return []
        if len(uids) > initial_limit:
            logger.info(
                "Initial sync: keeping newest %d of %d messages", initial_limit, len(uids)
            )
            uids = uids[-initial_limit:]
        response = session.fetch_uids(uids, FETCH_ITEMS)
    else:
        response = session.fetch_uids(f"{last_uid + 1}:*", FETCH_ITEMS)

    messages = [
        raw for raw in _to_raw_messages(response) if raw.uid > last_uid
    ]
    messages.sort(key=lambda m: m.uid)

    if last_uid == 0 and len(messages) > initial_limit:
        messages = messages[-initial_limit:]

    logger.debug(
        "Fetched %d messages from %s above UID %d",
        len(messages), session.selected_folder, last_uid,
    )
    return messages


def max_uid(messages: Iterable[RawMessage], default: int = 0) -> int:
    """Highest UID among messages, or default when there are none."""
    return max((m.uid for m in messages), default=default)


def _to_raw_messages(response: dict[int, dict[bytes, Any]]) -> list[RawMessage]:
    result = []
    for uid, data in response.items():
        body = data.get(b"BODY[]")
        if body is None:
            logger.warning("UID %s returned without a body, skipping", uid)
            continue
        flags = tuple(
            f.decode("ascii", errors="replace") if isinstance(f, bytes) else str(f)
            for f in data.get(b"FLAGS", ())
        )
        result.append(RawMessage(uid=int(data.get(b"UID", uid)), body=bytes(body), flags=flags))
    return result
