"""Record Export Renderers.

Renders patient records as a one-page PDF summary (fpdf2) or as a CSV
table of every stored column. Pure formatting: record lookup, the empty
export check and access control live in the service and API layers.

Security Impact:
    - Exports contain PHI and are only served to authenticated users
    - Internal fields such as password hashes never reach this module
"""

import csv
import io
import logging
from datetime import datetime
from typing import Callable, Optional

from fpdf import FPDF
from fpdf.enums import XPos, YPos

from clinsync.domain.models import PatientRecord
from clinsync.domain.ports import ExportPort
from clinsync.domain.utils import utc_now

logger = logging.getLogger(__name__)

CSV_COLUMNS = (
    "id",
    "patient_external_id",
    "first_name",
    "last_name",
    "date_of_birth",
    "gender",
    "demographics",
    "diagnosis",
    "treatment_plan",
    "notes",
    "sync_status",
    "external_record_id",
    "created_by",
    "created_at",
    "updated_at",
)

NOT_PROVIDED = "Not provided"
NO_NOTES = "No additional notes"


def pdf_filename(record: PatientRecord) -> str:
    return f"patient_{record.patient_external_id}.pdf"


CSV_FILENAME = "all_patient_records.csv"


def _latin1(text: str) -> str:
    # Core PDF fonts only cover latin-1
    return text.encode("latin-1", "replace").decode("latin-1")


def _cell_value(value) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):
        return str(value.value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


class RecordExportRenderer(ExportPort):
    """PDF and CSV rendering for patient records.

    Parameters:
        clock: Source of the "Generated" date printed on PDFs

    Example Usage:
        ```python
        renderer = RecordExportRenderer()
        pdf_bytes = renderer.render_pdf(record)
        csv_text = renderer.render_csv(records)
        ```
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock

    def pdf_fields(self, record: PatientRecord) -> list[tuple[str, str]]:
        """Label/value pairs printed on the PDF, in order."""
        return [
            ("Patient ID", record.patient_external_id),
            ("Name", f"{record.first_name} {record.last_name}"),
            ("Date of Birth", record.date_of_birth.isoformat() if record.date_of_birth else NOT_PROVIDED),
            ("Gender", record.gender.value if record.gender else NOT_PROVIDED),
            ("Diagnosis", record.diagnosis or NOT_PROVIDED),
            ("Treatment Plan", record.treatment_plan or NOT_PROVIDED),
            ("Notes", record.notes or NO_NOTES),
            ("Sync Status", record.sync_status.value),
        ]

    def render_pdf(self, record: PatientRecord, generated: Optional[datetime] = None) -> bytes:
        """Render one record as an A4 PDF.

        Parameters:
            record: Record to render
            generated: Date printed in the header (defaults to now)

        Returns:
            bytes: The PDF document
        """
        generated = generated or self._clock()

        pdf = FPDF(format="A4")
        pdf.set_title(_latin1(f"Patient Medical Record {record.patient_external_id}"))
        pdf.set_margins(20, 20, 20)
        pdf.add_page()

        pdf.set_font("Helvetica", "B", 20)
        pdf.cell(0, 12, "Patient Medical Record", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.set_font("Helvetica", "", 10)
        pdf.cell(0, 6, f"Generated: {generated.date().isoformat()}", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.line(20, pdf.get_y() + 2, 190, pdf.get_y() + 2)
        pdf.ln(8)

        for label, value in self.pdf_fields(record):
            pdf.set_font("Helvetica", "B", 11)
            pdf.cell(0, 7, f"{label}:", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
            pdf.set_font("Helvetica", "", 11)
            pdf.multi_cell(0, 6, _latin1(value), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
            pdf.ln(3)

        output = bytes(pdf.output())
        logger.debug(f"Rendered PDF for record {record.id} ({len(output)} bytes)")
        return output

    def render_csv(self, records: list[PatientRecord]) -> str:
        """Render records as CSV with a header row; every value is quoted."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for record in records:
            writer.writerow([_cell_value(getattr(record, column)) for column in CSV_COLUMNS])
        return buffer.getvalue()
