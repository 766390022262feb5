import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from questflow.api.api import api_router
from questflow.api import socket_router
from questflow.config.dependency_injection import PipelineContext, build_context
from questflow.core.config import Settings, get_settings
from questflow.db.init_db import init_db


def create_app(settings: Optional[Settings] = None, context: Optional[PipelineContext] = None) -> FastAPI:
    """
    创建 FastAPI 应用

    未传入 context 时，在生命周期开始时按配置组装上下文并创建数据表；
    测试可以直接传入已经组装好的 context。
    """
    settings = settings or (context.settings if context is not None else get_settings())
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_context = context is None
        if owns_context:
            logging.info("组装审批流程上下文")
            app.state.context = build_context(settings)
            if app.state.context.engine is not None:
                await asyncio.to_thread(init_db, app.state.context.engine)
        try:
            yield
        finally:
            ctx = app.state.context
            if owns_context and ctx.engine is not None:
                logging.info("释放数据库连接")
                ctx.engine.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    if context is not None:
        app.state.context = context

    # Set all CORS enabled origins
    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api_router, prefix=settings.API_V1_STR)
    app.include_router(socket_router.ws_router, prefix="/ws", tags=["ws"])
    return app


if __name__ == '__main__':
    uvicorn.run(
        'questflow.main:create_app',
        factory=True,
        host='0.0.0.0',
        port=get_settings().BACKEND_PORT,
        reload=True
    )
