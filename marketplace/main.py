import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import CORS_ORIGINS
from .database import create_firestore_client
from .domain.billing.router import access_router
from .domain.billing.router import router as billing_router
from .domain.billing.router import webhooks_router as billing_webhooks_router
from .domain.billing.errors import BillingError, InvalidCustomerData
from .domain.billing.providers import build_provider_registry
from .domain.professionals.router import router as professionals_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    app.state.firestore = create_firestore_client()
    app.state.providers = build_provider_registry()

    try:
        from .rate_limiter import get_redis_client

        get_redis_client()
    except Exception as e:
        logger.warning(f"Redis connection failed - Rate limiting will operate in fail-open mode: {e}")

    yield

    logger.info("Application shutting down...")
    await app.state.providers.aclose()
    app.state.firestore.close()


app = FastAPI(title="Marketplace Billing API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    """Typed billing failures: localized message for the user, detail to the logs"""
    if exc.status_code >= 500:
        logger.error(f"❌ {request.url.path} failed with {exc.code}: {exc.detail}")
    else:
        logger.warning(f"⚠️ {request.url.path} rejected with {exc.code}: {exc.detail}")

    content = {"detail": exc.user_message, "code": exc.code}
    if isinstance(exc, InvalidCustomerData) and exc.field:
        content["field"] = exc.field
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Convert 422 validation errors from HTTPBearer to 401 authentication errors
    when the issue is with the Authorization header
    """
    for error in exc.errors():
        if error.get("loc") and "authorization" in str(error.get("loc")).lower():
            logger.warning(
                f"Authentication failed for {request.url.path}: Missing or invalid Authorization header"
            )
            return JSONResponse(
                status_code=401,
                content={"detail": "Not authenticated. Please provide a valid Bearer token in the Authorization header."},
            )

    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": jsonable_errors(exc)})


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]


# CORS Configuration
logger.info(f"CORS allowed origins: {CORS_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

# Routes
app.include_router(billing_router)
app.include_router(access_router)
app.include_router(billing_webhooks_router)
app.include_router(professionals_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
