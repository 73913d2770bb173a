from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as PydanticValidationError
from starlette.responses import JSONResponse

from agentable.config import settings, setup_logging
from agentable.database import init_async_db
from agentable.exceptions import AppError
from agentable.middleware import LoggingMiddleware
from agentable.routers import agents, functions, tables, tools

# Setup logging first
logger = setup_logging()

logger.info(f"Database target: {settings.DATABASE_URL}")

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.SETTING_VERSION,
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "tryItOutEnabled": True,
        "defaultModelsExpandDepth": -1,
    }
)

app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
    expose_headers=settings.CORS_EXPOSE_HEADERS,
)

logger.info("Including routers...")
app.include_router(tables.router)
app.include_router(functions.router)
app.include_router(tools.router)
app.include_router(agents.router)
logger.info("Routers included")


@app.on_event("startup")
async def startup_event():
    logger.info("Application starting up...")
    await init_async_db()
    logger.info("Database initialized")


@app.get("/")
async def root():
    return {"message": f"{settings.APP_NAME} API", "health": "/api/health", "docs": "/docs"}


@app.get("/api/health")
async def health_check():
    """Health check endpoint for monitoring"""
    return {"status": "healthy", "version": settings.SETTING_VERSION}


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} in {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} in {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message}
    )


@app.exception_handler(PydanticValidationError)
async def validation_exception_handler(request: Request, exc: PydanticValidationError):
    logger.error(f"Pydantic ValidationError in {request.url.path}:")
    for error in exc.errors():
        logger.error(f"  - {error['loc']}: {error['msg']} (type: {error['type']})")
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors(include_context=False))}
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle FastAPI request validation errors (body parsing, query params, etc.)"""
    logger.error(f"RequestValidationError in {request.url.path}:")
    for error in exc.errors():
        logger.error(f"  - {error.get('loc')}: {error.get('msg')} (type: {error.get('type')})")
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors())}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all handler for any unhandled exceptions"""
    logger.exception(f"Unhandled exception in {request.url.path}: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error: {type(exc).__name__}"}
    )


logger.info("Application startup complete")
