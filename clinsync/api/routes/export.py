"""Export endpoints (PDF for one record, CSV for all records)."""

from fastapi import APIRouter, Response

from clinsync.adapters.export import CSV_FILENAME, pdf_filename
from clinsync.api.dependencies import CurrentUserDep, ServiceDep

router = APIRouter(prefix="/api/export", tags=["export"])


@router.get("/pdf/{record_id}")
async def export_pdf(record_id: int, user: CurrentUserDep, service: ServiceDep) -> Response:
    record, content = service.export_record_pdf(record_id)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{pdf_filename(record)}"'},
    )


@router.get("/csv")
async def export_csv(user: CurrentUserDep, service: ServiceDep) -> Response:
    """All records as CSV; 404 when there are none."""
    return Response(
        content=service.export_records_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{CSV_FILENAME}"'},
    )
