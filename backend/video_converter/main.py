"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from video_converter.api.routes import router
from video_converter.config import CORS_ORIGINS, logger as config_logger
from video_converter.conversion.service import close_conversion_service
from video_converter.db import init_db

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    config_logger.info("Video converter API started")
    yield
    close_conversion_service()
    config_logger.info("Video converter API shutting down")


app = FastAPI(
    title="Video Converter API",
    description="Upload videos and convert them between mp4, webm, avi, mov and mkv.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def session_header_middleware(request, call_next):
    """Set X-Session-ID on response when the session was created by the dependency."""
    response = await call_next(request)
    if hasattr(request.state, "session_id"):
        response.headers["X-Session-ID"] = request.state.session_id
    return response


app.middleware("http")(session_header_middleware)
app.include_router(router)


def run() -> None:
    import uvicorn
    from video_converter.config import HOST, PORT
    uvicorn.run("video_converter.main:app", host=HOST, port=PORT)


if __name__ == "__main__":
    run()
