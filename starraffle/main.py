# starraffle/main.py
import logging, sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from starraffle.core.config import settings
from starraffle.core.errors import RaffleError, RateLimited
from starraffle.db.session import AsyncSessionLocal

from starraffle.routers.raffle import router as raffle_router
from starraffle.routers.user import router as user_router
from starraffle.routers.admin import router as admin_router
from starraffle.routers.stats import router as stats_router

from starraffle.tasks.scheduler import start_scheduler, stop_scheduler
from starraffle.services.bootstrap_service import init_db, ensure_default_settings
from starraffle.services.delivery import DeliveryService
from starraffle.services.gate import build_admission_gate
from starraffle.services.lifecycle import RaffleLifecycleController
from starraffle.services.notify import build_notification_sink
from starraffle.services.payment import HttpPaymentBridge

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.ERROR)
logging.getLogger("httpx").setLevel(logging.WARNING)


@app.exception_handler(RaffleError)
async def raffle_error_handler(request: Request, exc: RaffleError):
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    body = {"error": exc.code, "message": exc.message}
    if exc.details:
        body["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


app.include_router(raffle_router)
app.include_router(user_router)
app.include_router(admin_router)
app.include_router(stats_router)


@app.on_event("startup")
async def on_startup() -> None:
    await init_db()
    async with AsyncSessionLocal() as session:
        await ensure_default_settings(session)

    # tests install their own controller before startup
    if getattr(app.state, "controller", None) is None:
        payments = HttpPaymentBridge(
            settings.PAYMENT_BRIDGE_URL,
            token=settings.PAYMENT_BRIDGE_TOKEN,
            timeout=settings.PAYMENT_BRIDGE_TIMEOUT,
        )
        delivery = DeliveryService(
            AsyncSessionLocal, payments,
            max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
            batch_limit=settings.DELIVERY_BATCH_LIMIT,
            claim_timeout=settings.DELIVERY_CLAIM_TIMEOUT,
        )
        app.state.controller = RaffleLifecycleController(
            AsyncSessionLocal,
            build_admission_gate(settings),
            payments,
            build_notification_sink(settings),
            delivery=delivery,
        )

    controller = app.state.controller
    raffle = await controller.ensure_active_raffle()
    logger.info("Active raffle %s (%s/%s)", raffle.id, raffle.current_participants, raffle.required_participants)
    start_scheduler(controller.delivery)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    stop_scheduler()
    controller = getattr(app.state, "controller", None)
    if controller is not None:
        await controller.payments.aclose()


@app.get("/ping")
async def ping():
    return {"ok": True, "env": settings.APP_ENV}


@app.get("/healthz")
async def healthz():
    return {"status": "healthy"}
