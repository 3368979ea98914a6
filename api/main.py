from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.database import init_db
from api.routes import router
from suite_runner.config import settings
from suite_runner.logging import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    setup_logging(settings.log_level)
    await init_db()
    yield


app = FastAPI(title="LLM Suite Runner", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    # keep the rich handler installed by the lifespan
    uvicorn.run(app, host="127.0.0.1", port=8000, log_config=None)
