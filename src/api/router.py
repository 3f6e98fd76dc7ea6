from fastapi import APIRouter

from src.api.notifications import router as notifications_router
from src.api.scraping import router as scraping_router

api_router = APIRouter()
api_router.include_router(notifications_router)
api_router.include_router(scraping_router)
