"""FastAPI application entry point."""
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.routes import downloads, router
from app.config import CORS_ORIGINS, IS_PRODUCTION, MAX_REQUEST_SIZE, QUOTA_BACKEND, logger as config_logger
from app.db import init_db
from app.errors import AppError
from app.pipeline import get_pipeline

logging.getLogger("uvicorn").setLevel(logging.INFO)
logger = logging.getLogger("converter.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if QUOTA_BACKEND == "database":
        init_db()
    pipeline = get_pipeline()
    config_logger.info("Image Transformer API started")
    yield
    pipeline.shutdown()
    config_logger.info("Image Transformer API shutting down")


app = FastAPI(
    title="Image Transformer API",
    description="Convert batches of images to JPEG, PNG, WebP, AVIF or GIF and download them as a zip.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    max_age=600,
)


def _error_response(status_code: int, body: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    # 5xx details carry internal reasons; keep them out of production responses
    include_details = exc.status_code < 500 or not IS_PRODUCTION
    return _error_response(exc.status_code, exc.to_dict(include_details=include_details))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
    error = AppError(str(exc.detail), status_code=exc.status_code, code=code)
    return _error_response(exc.status_code, error.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [{"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")} for e in exc.errors()]
    error = AppError("Invalid request", status_code=400, code="VALIDATION_ERROR", details=details)
    return _error_response(400, error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    details = None
    if not IS_PRODUCTION:
        details = {"reason": str(exc), "trace": traceback.format_exception(type(exc), exc, exc.__traceback__)}
    error = AppError("Internal server error", details=details)
    return _error_response(500, error.to_dict())


async def request_size_middleware(request: Request, call_next):
    """Reject bodies over MAX_REQUEST_SIZE from Content-Length before anything is read."""
    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > MAX_REQUEST_SIZE:
        error = AppError(
            f"Request body too large (max {MAX_REQUEST_SIZE} bytes)",
            status_code=413,
            code="REQUEST_TOO_LARGE",
            details={"maxRequestSize": MAX_REQUEST_SIZE},
        )
        return _error_response(413, error.to_dict())
    return await call_next(request)


async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    return response


app.middleware("http")(request_size_middleware)
app.middleware("http")(security_headers_middleware)
app.include_router(router)
app.include_router(downloads)


@app.get("/")
def root():
    return {"message": "Image Transformer API"}


if __name__ == "__main__":
    import uvicorn
    from app.config import HOST, PORT
    uvicorn.run("app.main:app", host=HOST, port=PORT, reload=True)
