"""
Line-delimited JSON export and import of a session tree.

Format: the first line is a session header, followed by one line per entry in
creation order and then one line per label record::

    {"type": "session", "version": 1, "id": "sess_…", "timestamp": "2025-01-01T12:00:00.000+00:00",
     "workingContext": "~/proj", "parentSession": "sess_…", "name": "…", "leafId": "a1b2c3d4"}
    {"type": "message", "id": "a1b2c3d4", "parentId": null, "timestamp": 1735732800000,
     "role": "user", "message": {…}}
    {"type": "label", "id": "lbl_…", "parentId": null, "timestamp": 1735732801000,
     "targetId": "a1b2c3d4", "label": "start"}

Payload fields are flattened into the entry line. The search-only ``text``
field is omitted whenever it can be re-derived from the structured body.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog

from sessiontree.models.entry import (
    CustomMessagePayload,
    Entry,
    EntryPayload,
    Label,
    MessagePayload,
    Session,
    content_text,
    payload_adapter,
    payload_to_json,
)
from sessiontree.store.entry_store import EntryStore

EXPORT_VERSION = 1

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_logger = structlog.get_logger("sessiontree.export")


class ExportFormatError(ValueError):
    """Raised when an export stream cannot be parsed."""

    def __init__(self, message: str, line_number: int | None = None) -> None:
        where = f"line {line_number}: " if line_number is not None else ""
        super().__init__(f"{where}{message}")
        self.line_number = line_number


# ── Export ────────────────────────────────────────────────────────────────────


async def export_records(
    store: EntryStore, session_id: str, *, version: int = EXPORT_VERSION
) -> list[dict[str, Any]]:
    """The export as a list of JSON-compatible dicts (header first)."""
    session = await store.get_session(session_id)
    entries = await store.get_session_entries(session_id)
    labels = await store.get_label_records(session_id)

    header: dict[str, Any] = {
        "type": "session",
        "version": version,
        "id": session.id,
        "timestamp": _iso(session.created_at),
        "workingContext": session.working_context,
    }
    if session.parent_session_id is not None:
        header["parentSession"] = session.parent_session_id
    if session.display_name is not None:
        header["name"] = session.display_name
    if session.leaf_id is not None:
        header["leafId"] = session.leaf_id

    records = [header]
    records.extend(_entry_record(entry) for entry in entries)
    records.extend(
        {
            "type": "label",
            "id": label.id,
            "parentId": None,
            "timestamp": label.created_at,
            "targetId": label.target_id,
            "label": label.label,
        }
        for label in labels
    )
    _logger.info(
        "session_exported",
        session_id=session_id,
        entry_count=len(entries),
        label_count=len(labels),
    )
    return records


async def export_session(
    store: EntryStore, session_id: str, *, version: int = EXPORT_VERSION
) -> str:
    """Serialise a session to line-delimited JSON text."""
    records = await export_records(store, session_id, version=version)
    return "".join(json.dumps(record, ensure_ascii=False) + "\n" for record in records)


async def export_to_file(store: EntryStore, session_id: str, path: str | Path) -> Path:
    """Write the export of *session_id* to *path* and return the path."""
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(await export_session(store, session_id), encoding="utf-8")
    return target


# ── Import ────────────────────────────────────────────────────────────────────


async def import_session(
    store: EntryStore,
    source: str | Iterable[str],
    *,
    session_id: str | None = None,
) -> Session:
    """
    Recreate a session from its line-delimited export.

    Ids, parent links, payloads, labels and the leaf are restored exactly.
    Without a ``leafId`` in the header the last entry line becomes the leaf.

    Args:
        store: Destination store.
        source: Export text, or an iterable of lines.
        session_id: Import under this id instead of the one in the header.

    Raises:
        ExportFormatError: If the stream is not a valid export.
        DuplicateIDError: If the session id already exists in *store*.
    """
    lines = source.splitlines() if isinstance(source, str) else list(source)
    header: dict[str, Any] | None = None
    entries: list[Entry] = []
    labels: list[Label] = []
    target_id = session_id

    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except ValueError as exc:
            raise ExportFormatError(f"invalid JSON ({exc})", number) from exc
        if not isinstance(record, dict):
            raise ExportFormatError("record is not a JSON object", number)

        if header is None:
            if record.get("type") != "session":
                raise ExportFormatError("first record must be the session header", number)
            version = record.get("version", EXPORT_VERSION)
            if not isinstance(version, int) or version > EXPORT_VERSION:
                raise ExportFormatError(f"unsupported export version {version!r}", number)
            header = record
            target_id = target_id or str(record.get("id") or "")
            if not target_id:
                raise ExportFormatError("session header has no id", number)
            continue

        if record.get("type") == "label":
            labels.append(_label_from_record(record, target_id, number))
        else:
            entries.append(_entry_from_record(record, target_id, number))

    if header is None:
        raise ExportFormatError("empty export")

    leaf_id = header.get("leafId") or (entries[-1].id if entries else None)
    session = Session(
        id=target_id,
        created_at=_parse_timestamp(header.get("timestamp")),
        working_context=header.get("workingContext") or "",
        parent_session_id=header.get("parentSession"),
        leaf_id=leaf_id,
        display_name=header.get("name"),
    )
    return await store.import_records(session, entries, labels)


async def import_from_file(
    store: EntryStore, path: str | Path, *, session_id: str | None = None
) -> Session:
    text = Path(path).expanduser().read_text(encoding="utf-8")
    return await import_session(store, text, session_id=session_id)


# ── Helpers ───────────────────────────────────────────────────────────────────


def derived_text(payload: EntryPayload) -> str | None:
    """The search text a payload's structured body implies, or ``None`` if it has none."""
    if isinstance(payload, MessagePayload):
        return MessagePayload.from_message(payload.message).text
    if isinstance(payload, CustomMessagePayload):
        return content_text(payload.content)
    return None


def _entry_record(entry: Entry) -> dict[str, Any]:
    fields = payload_to_json(entry.data)
    if "text" in fields and fields["text"] == derived_text(entry.data):
        del fields["text"]
    return {
        "type": entry.type,
        "id": entry.id,
        "parentId": entry.parent_id,
        "timestamp": entry.created_at,
        **fields,
    }


def _entry_from_record(record: dict[str, Any], session_id: str, number: int) -> Entry:
    fields = dict(record)
    entry_id = fields.pop("id", None)
    parent_id = fields.pop("parentId", None)
    timestamp = fields.pop("timestamp", None)
    if not isinstance(entry_id, str) or not entry_id:
        raise ExportFormatError("entry has no id", number)
    try:
        payload = payload_adapter.validate_python(fields)
    except ValueError as exc:
        raise ExportFormatError(f"invalid {fields.get('type')!r} entry {entry_id!r}: {exc}", number) from exc
    if "text" not in fields:
        text = derived_text(payload)
        if text is not None:
            payload = payload.model_copy(update={"text": text})
    return Entry(
        id=entry_id,
        session_id=session_id,
        parent_id=parent_id,
        created_at=_parse_timestamp(timestamp),
        data=payload,
    )


def _label_from_record(record: dict[str, Any], session_id: str, number: int) -> Label:
    target = record.get("targetId")
    label_id = record.get("id")
    if not isinstance(target, str) or not isinstance(label_id, str):
        raise ExportFormatError("label record needs id and targetId", number)
    return Label(
        id=label_id,
        session_id=session_id,
        target_id=target,
        label=record.get("label"),
        created_at=_parse_timestamp(record.get("timestamp")),
    )


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=UTC).isoformat(timespec="milliseconds")


def _parse_timestamp(value: Any) -> int:
    """Accept unix milliseconds or an ISO-8601 string."""
    if isinstance(value, bool):
        raise ExportFormatError(f"invalid timestamp {value!r}")
    if isinstance(value, int | float):
        return int(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ExportFormatError(f"invalid timestamp {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return (parsed - _EPOCH) // timedelta(milliseconds=1)
    raise ExportFormatError(f"invalid timestamp {value!r}")
