from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from cobra_chat.services.container import ServiceContainer
from cobra_chat.services.quota_tracker import QuotaStatus, format_time_until_reset
from cobra_chat.services.semantic_cache import FileContext
from cobra_chat.routes.dependencies import get_services
from cobra_chat.utils.errors import GenerationError, ValidationError
from cobra_chat.utils.logger import logger

router = APIRouter(prefix="/users/{user_id}", tags=["chat"])

GENERATION_ERROR_MESSAGE = "Sorry, I encountered an error. Please try again."


class FilePayload(BaseModel):
    name: str
    size: int = 0
    content: str
    mime_type: str = ""


class MessageRequest(BaseModel):
    message: str = ""
    chat_id: Optional[str] = None
    file: Optional[FilePayload] = None

    def file_context(self) -> Optional[FileContext]:
        if self.file is None:
            return None
        return FileContext(name=self.file.name, size=self.file.size, content=self.file.content, mime_type=self.file.mime_type)


def quota_payload(status: QuotaStatus) -> dict:
    return {**status.to_dict(), "resets_in": format_time_until_reset(status.reset_at)}


def limit_response(status: QuotaStatus) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "detail": f"Chat limit reached. Try again in {format_time_until_reset(status.reset_at)}.",
            "quota": quota_payload(status),
        },
    )


@router.get("/quota")
async def get_quota(user_id: str, services: ServiceContainer = Depends(get_services)):
    """Lets clients show the remaining count (and a countdown) before sending."""
    status = await services.quota.check(user_id)
    return quota_payload(status)


@router.post("/messages")
async def send_message(user_id: str, body: MessageRequest, services: ServiceContainer = Depends(get_services)):
    try:
        reply = await services.chat_service.reply(user_id, body.message, body.chat_id, body.file_context())
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except GenerationError as e:
        logger.error(f"Error generating response: {str(e)}")
        raise HTTPException(status_code=502, detail=GENERATION_ERROR_MESSAGE)

    if reply.blocked:
        return limit_response(reply.quota)
    return {**reply.to_dict(), "quota": quota_payload(reply.quota)}


@router.post("/messages/stream")
async def stream_message(user_id: str, body: MessageRequest, services: ServiceContainer = Depends(get_services)):
    chat_service = services.chat_service
    try:
        turn = await chat_service.start_turn(user_id, body.message, body.chat_id, body.file_context())
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if turn.blocked:
        return limit_response(turn.quota)

    async def fragments():
        try:
            async for fragment in chat_service.stream(turn):
                yield fragment
        except GenerationError as e:
            logger.error(f"Error generating response: {str(e)}")
            yield f"\n\n{GENERATION_ERROR_MESSAGE}"

    headers = {"X-Chat-Id": turn.chat_id, "X-Cache": "hit" if turn.cached else "miss"}
    return StreamingResponse(fragments(), media_type="text/plain; charset=utf-8", headers=headers)


@router.get("/chats")
async def list_chats(user_id: str, background_tasks: BackgroundTasks, services: ServiceContainer = Depends(get_services)):
    settings = services.settings
    # Opening the chat list is the cue for best-effort cache cleanup
    background_tasks.add_task(
        services.cache.prune_in_background,
        user_id,
        settings.CACHE_PRUNE_MAX_AGE_DAYS,
        settings.CACHE_PRUNE_MIN_HITS,
    )
    return {"chats": await services.chats.list_chats(user_id)}


@router.get("/chats/{chat_id}/messages")
async def list_messages(user_id: str, chat_id: str, services: ServiceContainer = Depends(get_services)):
    if not await services.chats.chat_exists(user_id, chat_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"messages": await services.chats.load_messages(chat_id)}


@router.delete("/chats/{chat_id}")
async def delete_chat(user_id: str, chat_id: str, services: ServiceContainer = Depends(get_services)):
    if not await services.chats.chat_exists(user_id, chat_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    await services.chats.delete_chat(user_id, chat_id)
    return {"status": "deleted"}


@router.delete("/chats")
async def delete_all_chats(user_id: str, services: ServiceContainer = Depends(get_services)):
    deleted = await services.chats.delete_all_chats(user_id)
    return {"status": "deleted", "count": deleted}


@router.delete("/cache")
async def clear_cache(user_id: str, services: ServiceContainer = Depends(get_services)):
    await services.cache.clear(user_id)
    return {"status": "cleared"}
