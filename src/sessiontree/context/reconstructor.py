"""Turn a leaf pointer into the ordered root→leaf branch of a session tree."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import cast

import structlog

from sessiontree.models.entry import CompactionPayload, Entry
from sessiontree.store.entry_store import EntryStore, MalformedEntryError, RawEntry

_logger = structlog.get_logger("sessiontree.reconstructor")


@dataclass
class Branch:
    """
    A root→leaf path through a session tree plus its compaction boundary.

    ``compaction_index`` is the position of the compaction closest to the
    leaf. ``first_kept_index`` is the position of that compaction's
    ``first_kept_entry_id``, or ``None`` when the id is not on the path (in
    which case nothing before the compaction is kept).
    """

    session_id: str
    leaf_id: str | None
    entries: list[Entry] = field(default_factory=list)
    compaction_index: int | None = None
    first_kept_index: int | None = None
    malformed_entry_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_entries(
        cls,
        session_id: str,
        entries: Sequence[Entry],
        *,
        malformed_entry_ids: Sequence[str] = (),
    ) -> Branch:
        """Build a branch from already-decoded root→leaf entries."""
        entries = list(entries)
        branch = cls(
            session_id=session_id,
            leaf_id=entries[-1].id if entries else None,
            entries=entries,
            malformed_entry_ids=list(malformed_entry_ids),
        )
        for index in range(len(entries) - 1, -1, -1):
            if isinstance(entries[index].data, CompactionPayload):
                branch.compaction_index = index
                break
        compaction = branch.compaction
        if compaction is not None:
            first_kept = cast(CompactionPayload, compaction.data).first_kept_entry_id
            for index, entry in enumerate(entries):
                if entry.id == first_kept:
                    branch.first_kept_index = index
                    break
            else:
                _logger.warning(
                    "first_kept_entry_missing",
                    session_id=session_id,
                    compaction_entry_id=compaction.id,
                    first_kept_entry_id=first_kept,
                )
        return branch

    @property
    def compaction(self) -> Entry | None:
        """The active compaction entry, if any."""
        if self.compaction_index is None:
            return None
        return self.entries[self.compaction_index]

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def retained_entries(self) -> list[Entry]:
        """
        Entries that survive the active compaction, in path order.

        Without a compaction this is the whole path. With one it is the span
        from ``first_kept`` (inclusive) to the compaction (exclusive),
        followed by everything after the compaction.
        """
        if self.compaction_index is None:
            return list(self.entries)
        after = self.entries[self.compaction_index + 1 :]
        if self.first_kept_index is None:
            return after
        return self.entries[self.first_kept_index : self.compaction_index] + after

    def ids(self) -> list[str]:
        return [entry.id for entry in self.entries]


class BranchReconstructor:
    """
    Loads a session's current (or any explicit) branch from the store.

    Payloads are decoded here. A malformed entry in the middle of a path is
    skipped and reported in :attr:`Branch.malformed_entry_ids`; a malformed
    leaf fails the whole reconstruction because there is nothing sensible to
    continue from.
    """

    def __init__(self, store: EntryStore) -> None:
        self._store = store

    async def reconstruct(self, session_id: str, leaf_id: str | None = None) -> Branch:
        """
        Reconstruct the branch ending at *leaf_id* (default: the session's leaf).

        Raises:
            SessionNotFoundError: If the session does not exist.
            EntryNotFoundError: If *leaf_id* is not an entry of the session.
            BrokenAncestryError: If an ancestor is missing.
            CycleOrDepthExceededError: If the parent chain is cyclic or too deep.
            MalformedEntryError: If the leaf itself cannot be decoded.
        """
        if leaf_id is None:
            session = await self._store.get_session(session_id)
            leaf_id = session.leaf_id
            if leaf_id is None:
                return Branch(session_id=session_id, leaf_id=None)
        rows = await self._store.ancestry_rows(leaf_id, session_id=session_id)
        return self.from_rows(session_id, rows)

    def from_rows(self, session_id: str, rows: Sequence[RawEntry]) -> Branch:
        """Decode root→leaf rows into a :class:`Branch`."""
        entries: list[Entry] = []
        malformed: list[str] = []
        for position, raw in enumerate(rows):
            try:
                entries.append(raw.decode())
            except MalformedEntryError as exc:
                reached = entries[-1].id if entries else None
                if position == len(rows) - 1:
                    _logger.error(
                        "malformed_leaf",
                        session_id=session_id,
                        entry_id=raw.id,
                        reached_entry_id=reached,
                        error=exc.reason,
                    )
                    raise MalformedEntryError(raw.id, reached, exc.reason) from exc
                _logger.warning(
                    "malformed_entry_skipped",
                    session_id=session_id,
                    entry_id=raw.id,
                    entry_type=raw.type,
                    error=exc.reason,
                )
                malformed.append(raw.id)
        branch = Branch.from_entries(session_id, entries, malformed_entry_ids=malformed)
        if rows:
            branch.leaf_id = rows[-1].id
        return branch
