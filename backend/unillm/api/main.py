from fastapi import APIRouter

from unillm.api.routes import messages, providers

api_router = APIRouter()
api_router.include_router(providers.router)
api_router.include_router(messages.router)
