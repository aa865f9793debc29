"""
Bulk import endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import get_actor_id, get_system
from .schemas import BulkImportRequest, import_report_response
from ..imports import parse_csv
from ..system import LedgerSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def run_import(
    request: BulkImportRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Apply deposit, withdrawal or loan-payment rows given inline or as CSV text"""
    if not actor_id:
        raise HTTPException(status_code=401, detail="X-Actor-Id header is required for imports")

    if request.csv_text is not None:
        rows = parse_csv(request.csv_text)
    elif request.rows is not None:
        rows = [row.model_dump() for row in request.rows]
    else:
        raise HTTPException(status_code=422, detail="Either rows or csv_text is required")

    report = system.importer.import_rows(rows, performed_by=actor_id, file_name=request.file_name)
    return import_report_response(report)


@router.get("")
def list_imports(system: LedgerSystem = Depends(get_system)):
    return {"imports": [import_report_response(r) for r in system.importer.list_reports()]}


@router.get("/{report_id}")
def get_import(report_id: str, system: LedgerSystem = Depends(get_system)):
    report = system.importer.get_report(report_id)
    if not report:
        raise HTTPException(status_code=404, detail="Import not found")
    return import_report_response(report)
