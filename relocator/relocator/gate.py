from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Iterator, Optional, Protocol

from .models import JournalEntry, Origin

logger = logging.getLogger(__name__)

JOURNAL_ACTION = "RELOCATOR"
JOURNAL_ACTION_COMPLETED = "completed"


class JournalSource(Protocol):
    def journal_entries(self, object_id: str, action: str) -> Iterator[JournalEntry]: ...


def already_processed(
    entries: Iterable[JournalEntry],
    modification_time: Optional[datetime],
) -> bool:
    """True when a completion entry is at least as recent as the object."""
    for entry in entries:
        if entry.parameters != JOURNAL_ACTION_COMPLETED:
            continue
        # an object without creation or modification time counts as done once completed
        if modification_time is None or entry.created >= modification_time:
            return True
    return False


def is_completed(journal: Optional[JournalSource], origin: Origin) -> bool:
    if journal is None:
        return False
    entries = journal.journal_entries(origin.public_id, JOURNAL_ACTION)
    if already_processed(entries, origin.modification_time):
        logger.debug(
            "%s: found journal entry \"completely processed\", ignoring origin",
            origin.public_id,
        )
        return True
    logger.debug("%s: no journal entry \"completely processed\" found, go ahead", origin.public_id)
    return False
