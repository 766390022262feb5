from fastapi import APIRouter, Depends, HTTPException

from questflow.api.deps import get_actions
from questflow.schemas.response import ReviewerInfo, StandardResponse
from questflow.services.quest_actions import QuestActions

router = APIRouter()


@router.get("/me", response_model=StandardResponse[ReviewerInfo])
def get_reviewer_info(actions: QuestActions = Depends(get_actions)):
    info = actions.get_reviewer_info()
    if info is None:
        raise HTTPException(status_code=403, detail="Reviewer access required")
    return StandardResponse(data=info)
