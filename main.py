"""
ChatLima backend - FastAPI application for multi-provider streaming chat.
Routes chats through OpenRouter, Requesty and Ollama with MCP tools, web search,
credit and usage accounting, and admin maintenance endpoints.
"""
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from config import Config
from db.session import configure_engine, dispose_engine, init_db
from routes import admin_cleanup, auth_route, chat_stream, chats, limits, models_route, pricing
from auth import SessionAuthMiddleware
from utils.constants import ErrorCode
from utils.errors import ChatLimaError, error_response
from utils.http_client import HTTPClientManager
from utils.logger import app_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    Config.validate()
    configure_engine()
    await init_db()
    yield
    await HTTPClientManager.close_all()
    await dispose_engine()

app = FastAPI(title=Config.APP_TITLE, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatLimaError)
async def chatlima_exception_handler(request: Request, exc: ChatLimaError):
    app_logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with user-friendly messages"""
    errors = exc.errors()
    app_logger.error(f"Validation error for {request.url}")
    app_logger.error(f"Errors: {errors}")

    message = "Validation error"
    if errors:
        first_error = errors[0]
        error_type = first_error.get('type', '')
        field = first_error.get('loc', [])[-1] if first_error.get('loc') else 'field'

        if error_type == 'string_too_long':
            max_length = first_error.get('ctx', {}).get('max_length', 'unknown')
            current_length = len(first_error.get('input', ''))
            message = f"Field '{field}' exceeds maximum length of {max_length} characters (current: {current_length})"
        else:
            message = f"{field}: {first_error.get('msg', 'Validation error')}"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "code": ErrorCode.INVALID_REQUEST,
                "message": message,
                "details": [
                    {"msg": error.get('msg'), "type": error.get('type'), "loc": list(error.get('loc', []))}
                    for error in errors
                ],
            }
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    app_logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"code": ErrorCode.INTERNAL_ERROR, "message": "Internal server error", "details": str(exc)}},
    )


app.add_middleware(SessionAuthMiddleware)

#health endpoint
@app.get("/health")
async def health():
    """Health check."""
    return {"status": "ok", "service": Config.APP_TITLE}

app.include_router(auth_route.router, tags=["auth"])
app.include_router(models_route.router, tags=["models"])
app.include_router(chat_stream.router, tags=["chat"])
app.include_router(chats.router, tags=["chats"])
app.include_router(limits.router, tags=["limits"])
app.include_router(pricing.router, tags=["pricing"])
app.include_router(admin_cleanup.router, tags=["admin"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
