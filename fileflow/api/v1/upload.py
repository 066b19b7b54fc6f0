"""File API: upload, list, inspect parsed data, delete.

POST   /upload                 receive a text file, optionally queue it
GET    /files                  list uploaded files
GET    /files/{file_id}        one file
GET    /files/{file_id}/data   parsed line records, by line number
DELETE /files/{file_id}        blob, parsed lines and file record
"""

import os
import tempfile
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from fileflow.config import settings
from fileflow.exceptions import NotFoundError, ServiceUnavailableError, ValidationError
from fileflow.jobs.models import FilePage, FileRecord, FileStatus, LinePage

router = APIRouter()

# Wired in during lifespan (same pattern as jobs.py)
_file_service = None
_dispatcher = None


def set_file_service(service):
    global _file_service
    _file_service = service


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def _require_file_service():
    if _file_service is None:
        raise HTTPException(status_code=503, detail="File service not ready")
    return _file_service


_CHUNK_BYTES = 1024 * 1024


# ---------------------------------------------------------------------------
# POST /upload
# ---------------------------------------------------------------------------

@router.post("/upload", status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    auto_process: bool = Form(False),
    priority: int = Form(0),
):
    """Accept a text-like upload, store it and optionally queue processing.

    Returns:
        {file, job?}
    """
    service = _require_file_service()

    original_name = os.path.basename(file.filename or "upload.txt")
    ext = os.path.splitext(original_name)[1].lower()
    try:
        service.validate_upload(original_name)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)

    # Spool to disk first so the size limit holds before anything reaches storage
    total = 0
    tmp = tempfile.NamedTemporaryFile(prefix="fileflow_", suffix=ext, delete=False)
    try:
        with tmp:
            while True:
                chunk = await file.read(_CHUNK_BYTES)
                if not chunk:
                    break
                total += len(chunk)
                if total > settings.max_file_size:
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large (max {settings.max_file_size} bytes)",
                    )
                tmp.write(chunk)

        with open(tmp.name, "rb") as stream:
            try:
                record = await service.upload_file(
                    stream,
                    original_name=original_name,
                    file_size=total,
                    mime_type=file.content_type or "text/plain",
                )
            except ValidationError as e:
                status = 413 if e.error_code == "FILE_TOO_LARGE" else 400
                raise HTTPException(status_code=status, detail=e.message)
    finally:
        os.remove(tmp.name)

    response = {"file": record.model_dump(mode="json")}

    if auto_process and _dispatcher is not None:
        try:
            job = await _dispatcher.add_job(record.file_id, priority)
            response["job"] = {"job_id": job.job_id, "status": job.status.value}
        except ServiceUnavailableError as e:
            # The upload itself succeeded; processing can be requested later.
            response["job_error"] = e.message

    return response


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

@router.get("/files", response_model=FilePage)
async def list_files(status: Optional[FileStatus] = None, page: int = 1, limit: int = 20):
    service = _require_file_service()
    if page < 1 or not 1 <= limit <= 100:
        raise HTTPException(status_code=400, detail="page must be >= 1 and limit between 1 and 100")
    return await service.list_files(status=status, page=page, limit=limit)


@router.get("/files/{file_id}", response_model=FileRecord)
async def get_file(file_id: str):
    service = _require_file_service()
    try:
        return await service.get_file(file_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="File not found")


@router.get("/files/{file_id}/data", response_model=LinePage)
async def get_file_data(file_id: str, page: int = 1, limit: int = 100):
    service = _require_file_service()
    if page < 1 or not 1 <= limit <= 1000:
        raise HTTPException(status_code=400, detail="page must be >= 1 and limit between 1 and 1000")
    try:
        return await service.get_file_data(file_id, page=page, limit=limit)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="File not found")


@router.delete("/files/{file_id}")
async def delete_file(file_id: str):
    service = _require_file_service()
    try:
        await service.delete_file(file_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    return {"message": "File deleted", "file_id": file_id}
