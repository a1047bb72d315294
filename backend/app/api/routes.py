from fastapi import APIRouter

from app.api.messages import router as messages_router

router = APIRouter()

router.include_router(messages_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the duochat API"}
