"""Export renderers (PDF and CSV)."""

from clinsync.adapters.export.renderers import CSV_FILENAME, RecordExportRenderer, pdf_filename

__all__ = ["CSV_FILENAME", "RecordExportRenderer", "pdf_filename"]
