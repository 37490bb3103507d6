from fastapi import APIRouter
from dojo_notices.routers.notice_router import router as notice_router

api_router = APIRouter()

api_router.include_router(notice_router, tags=["notices"])
