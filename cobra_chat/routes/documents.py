import asyncio

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from cobra_chat.services.container import ServiceContainer
from cobra_chat.routes.dependencies import get_services
from cobra_chat.utils.errors import ExtractionError
from cobra_chat.utils.logger import logger

router = APIRouter(tags=["documents"])


@router.post("/documents")
async def upload_document(file: UploadFile = File(...), services: ServiceContainer = Depends(get_services)):
    """Extracts text from a PDF or Word file. The client sends it back with its next message."""
    documents = services.documents
    filename = file.filename or ""
    content_type = file.content_type or ""

    # Reject on the declared size before reading the body when the client sent one
    if file.size is not None:
        ok, reason = documents.validate(filename, content_type, file.size)
        if not ok:
            raise HTTPException(status_code=400, detail=reason)

    data = await file.read()
    ok, reason = documents.validate(filename, content_type, len(data))
    if not ok:
        raise HTTPException(status_code=400, detail=reason)

    try:
        context = await asyncio.to_thread(documents.extract, filename, content_type, data)
    except ExtractionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Extracted {len(context.content)} characters from {filename}")
    return {
        "name": context.name,
        "size": context.size,
        "content": context.content,
        "mime_type": context.mime_type,
    }
