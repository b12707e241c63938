from fastapi import APIRouter, Depends

from cobra_chat.services.container import ServiceContainer
from cobra_chat.routes.dependencies import get_services

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/guidelines/status")
async def guidelines_status(services: ServiceContainer = Depends(get_services)):
    return {**services.guidelines.status(), "cache": await services.guidelines.cache_stats()}


@router.post("/guidelines/rebuild")
async def rebuild_guidelines(services: ServiceContainer = Depends(get_services)):
    success = await services.guidelines.rebuild_index()
    return {"success": success, **services.guidelines.status()}


@router.get("/guidelines/search")
async def search_guidelines(q: str, top_k: int = 3, services: ServiceContainer = Depends(get_services)):
    matches = await services.guidelines.search(q, top_k=top_k)
    return {
        "results": [
            {"similarity": m.similarity, "guideline": m.document.to_dict()}
            for m in matches
        ]
    }


@router.delete("/guidelines/{document_id}/embedding")
async def delete_guideline_embedding(document_id: str, services: ServiceContainer = Depends(get_services)):
    await services.guidelines.delete_cached_embedding(document_id)
    return {"status": "deleted"}


@router.get("/quotas")
async def list_quotas(services: ServiceContainer = Depends(get_services)):
    return {"quotas": await services.quota.all_records()}


@router.post("/quotas/{user_id}/reset")
async def reset_quota(user_id: str, services: ServiceContainer = Depends(get_services)):
    status = await services.quota.reset(user_id)
    return status.to_dict()


@router.get("/cache/{user_id}/stats")
async def cache_stats(user_id: str, services: ServiceContainer = Depends(get_services)):
    return await services.cache.stats(user_id)
