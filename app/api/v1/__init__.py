from fastapi import APIRouter
from .cron.cron_routes import router as cron_router

router = APIRouter()


router.include_router(cron_router)
