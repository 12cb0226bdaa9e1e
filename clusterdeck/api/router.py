from fastapi import APIRouter

from clusterdeck.api.routes import clusters, discovery, events, sessions

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(clusters.router)
api_router.include_router(discovery.router)
api_router.include_router(sessions.router)
api_router.include_router(events.router)
