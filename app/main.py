"""
eClazz School Platform - Main FastAPI Application
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.core.config import parse_csv, settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import Database

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "payments", "description": "רענון סטטוס תשלום מול Billplz."},
    {"name": "parent", "description": "פעולות הורה: אישור תשלום על מקום אונליין."},
    {"name": "admin", "description": "פעולות מנהל: העברת תלמיד לתוכנית אונליין."},
    {"name": "public", "description": "API ציבורי ל-onboarding (בדיקת slug)."},
    {"name": "webhooks", "description": "Webhook של Billplz לעדכוני סטטוס תשלום."},
    {"name": "Health", "description": "Liveness / readiness probes."},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """ה-engine נוצר כאן ונשמר ב-app.state — לא בזמן import"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    database = Database(settings.DATABASE_URL, echo=settings.DEBUG)
    app.state.database = database
    await database.create_all()
    logger.info("Database tables initialized")

    yield

    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await database.dispose()
    logger.info("Database connections disposed")


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "שירותי הליבה של פלטפורמת בתי הספר: תשלומי Billplz, "
        "העברת תלמידים לאונליין ו-onboarding של tenants."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Setup middleware (correlation ID, request logging, rate limiting)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = parse_csv(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description=(
        "בדיקה קלה שהתהליך חי ומגיב. "
        "לא בודק תלויות חיצוניות — כדי למנוע restart מיותר בגלל כשלון DB/Redis."
    ),
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe — התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקת התלויות: DB ו-Redis (כש-RATE_LIMIT_BACKEND=redis). "
        "מחזיר status=healthy אם הכל תקין, או status=degraded עם פירוט השגיאה."
    ),
    responses={
        200: {
            "description": "כל התלויות תקינות",
            "content": {
                "application/json": {
                    "example": {"status": "healthy", "db": "ok", "redis": "disabled"}
                }
            },
        },
        503: {
            "description": "לפחות תלות אחת לא זמינה",
            "content": {
                "application/json": {
                    "example": {"status": "degraded", "db": "error: db_unavailable", "redis": "ok"}
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check(request: Request) -> JSONResponse:
    """Readiness probe — בדיקת התלויות החיצוניות."""
    from app.domain.services.health_service import check_readiness

    result = await check_readiness(request.app.state.database)
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
