# main.py
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from tokenward.api.endpoints import auth, users
from tokenward.api.errors import register_exception_handlers
from tokenward.api.gateway import auth_gateway
from tokenward.core.config import settings
from tokenward.core.logging import setup_logging
from tokenward.db.initial_data import init_db
from tokenward.db.session import dispose_engine
from tokenward.schemas.common import ApiResponse

setup_logging()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.DEFAULT_RATE_LIMIT],
    enabled=settings.RATE_LIMIT_ENABLED,
)

app = FastAPI(
    title="Tokenward",
    description="Token lifecycle service: registration, login, refresh, logout and validation",
    version="1.0.0",
    # The gateway runs on every request and only attaches the principal;
    # protected routes reject through get_current_principal
    dependencies=[Depends(auth_gateway)],
)

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)

api_prefix = "/api/v1"
app.include_router(auth.router, prefix=f"{api_prefix}/auth", tags=["Authentication"])
app.include_router(users.router, prefix=f"{api_prefix}/users", tags=["Users"])


@app.on_event("startup")
async def startup_event():
    if settings.AUTO_CREATE_TABLES:
        await init_db()
    logger.info("Tokenward started")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down: disposing database engine...")
    await dispose_engine()


@app.get("/")
def read_root():
    return ApiResponse.ok("Tokenward is running!")
