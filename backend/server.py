# backend/server.py
import logging

from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from backend.api.billing import router as billing_router
from backend.api.subscriptions import router as subscriptions_router
from backend.api.webhooks import router as webhooks_router
from backend.core.config import FRONTEND_URL, env_list
from backend.core.database import Base, engine
from backend.core.errors import BillingError
import backend.models  # noqa: F401  (register tables)
from backend.services.payment_gateway import GatewayRegistry
from backend.services.stripe_gateway import StripeGateway

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("billing")

app = FastAPI(title="Billing API")
app.state.gateways = GatewayRegistry({StripeGateway.slug: StripeGateway})

api_router = APIRouter(prefix="/api")


# ================== ERRORS ==================

@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error(
            "%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message,
            extra={"metadata": exc.metadata},
        )
    else:
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ================== STARTUP ==================

@app.on_event("startup")
async def startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@api_router.get("/health")
async def health():
    return {"status": "ok"}


# ================== FINAL ==================

app.include_router(api_router)
app.include_router(billing_router)
app.include_router(subscriptions_router)
app.include_router(webhooks_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=env_list("CORS_ORIGINS", FRONTEND_URL),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=86400,
)


@app.on_event("shutdown")
async def shutdown():
    app.state.gateways.reset()
    await engine.dispose()
