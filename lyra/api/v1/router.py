from fastapi import APIRouter

from lyra.api.v1.endpoints.prompt_history import router as prompt_history_router
from lyra.api.v1.endpoints.tasks import router as tasks_router

router = APIRouter()


@router.get("/ping")
async def ping():
    return {"ping": "pong"}


router.include_router(tasks_router)
router.include_router(prompt_history_router)
