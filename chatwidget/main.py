"""FastAPI application entry point for the chat widget backend."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatwidget.api.routes.chat import router as chat_router
from chatwidget.config import settings
from chatwidget.core.errors import ChatError
from chatwidget.database import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and create tables on startup."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        init_db()
        logger.info("Database initialized")
    except Exception:
        logger.exception("Database init failed")
        raise

    yield


app = FastAPI(
    title="Chat Widget API",
    description="Embeddable chat widget backed by an LLM assistant",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Thread-Id"],
)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


app.include_router(chat_router)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    """Map chat core errors to their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies and parameters as 400."""
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request", "errors": jsonable_errors(exc)},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with generic error response."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
