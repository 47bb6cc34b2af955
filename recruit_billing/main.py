import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi import _rate_limit_exceeded_handler
import sentry_sdk

from recruit_billing.api.v1.health import router as health_router
from recruit_billing.api.v1.payments import router as payments_router
from recruit_billing.api.v1.credits import router as credits_router
from recruit_billing.api.v1.profiles import router as profiles_router
from recruit_billing.api.v1.admin import router as admin_router
from recruit_billing.core.rate_limit import limiter
from recruit_billing.core.config import settings
from recruit_billing.core.lifespan import lifespan

logging.basicConfig(level=settings.log_level, format="%(message)s")
if settings.sentry_dsn:
    sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.app_env)

app = FastAPI(title="Recruit Billing API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_allowed_origins),
    allow_origin_regex=(settings.cors_allow_origin_regex or "").strip() or None,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.include_router(health_router, prefix="/v1", tags=["Health"])
app.include_router(payments_router, prefix="/v1", tags=["Payments"])
app.include_router(credits_router, prefix="/v1", tags=["Credits"])
app.include_router(profiles_router, prefix="/v1", tags=["Profiles"])
app.include_router(admin_router, prefix="/v1", tags=["Admin"])
