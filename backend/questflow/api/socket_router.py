from fastapi import APIRouter
from questflow.api.endpoints import review_socket

ws_router = APIRouter()
ws_router.include_router(review_socket.router, tags=["ws"])
