from fastapi import APIRouter
from questflow.api.endpoints import quests, reviewers

api_router = APIRouter()
api_router.include_router(quests.router, prefix="/quests", tags=["quests"])
api_router.include_router(reviewers.router, prefix="/reviewers", tags=["reviewers"])
