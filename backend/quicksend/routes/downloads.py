"""Download redirect endpoint."""
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from quicksend.dependencies import get_orchestrator
from quicksend.services.orchestrator import UploadOrchestrator

router = APIRouter(tags=["downloads"])


@router.get("/download/{file_id}")
async def download_file(
    file_id: UUID,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Redirect to a short-lived presigned GET URL.

    404 unknown or inactive, 423 still uploading, 410 expired, 500 failed upload.
    """
    target = await orchestrator.resolve_download(file_id)
    return RedirectResponse(target.url, status_code=302)
