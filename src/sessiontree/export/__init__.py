"""Line-delimited JSON export/import."""

from sessiontree.export.jsonl import (
    EXPORT_VERSION,
    ExportFormatError,
    export_records,
    export_session,
    export_to_file,
    import_from_file,
    import_session,
)

__all__ = [
    "EXPORT_VERSION",
    "ExportFormatError",
    "export_records",
    "export_session",
    "export_to_file",
    "import_from_file",
    "import_session",
]
