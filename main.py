from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinic_engine.api.routes import router
from clinic_engine.core.config import engine, settings
from clinic_engine.models.schema import Base
from clinic_engine.utils.redis_helper import redis_helper

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.auto_create_tables:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ensured")
    logger.info(f"Read cache {'enabled' if redis_helper.available else 'disabled'}")
    yield

app = FastAPI(
    title="Clinic Session Ledger - Scheduling & Payment Reconciliation",
    description="Session booking, advance-credit tracking and attendance payment reconciliation for therapy clinics",
    version="1.0.0",
    docs_url="/",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed requests in the same body shape as use-case errors.

    A malformed X-Staff-Id header is an authentication failure, not a validation one.
    """
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ())]

    if location[:1] == ["header"] and "x-staff-id" in location:
        logger.warning(f"Rejected {request.url.path}: malformed X-Staff-Id header")
        return JSONResponse(
            status_code=401,
            content={"detail": {"success": False, "message": "Invalid X-Staff-Id header"}}
        )

    field = location[-1] if len(location) > 1 else None
    return JSONResponse(
        status_code=422,
        content={
            "detail": {
                "success": False,
                "message": first.get("msg", "Invalid request"),
                "kind": "ValidationFailed",
                "field": field
            }
        }
    )

@app.get("/health")
def health_check():
    return {"status": "healthy", "message": "Clinic scheduling and payment engine is running"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
