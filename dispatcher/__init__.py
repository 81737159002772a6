import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from .api import PaymentDispatchService
from .config import LOG_LEVEL, REDIS_URL
from .errors import DispatchError

logger = logging.getLogger(__name__)


def create_app(service: Optional[PaymentDispatchService] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=LOG_LEVEL)
        owned_redis = None
        if app.state.service is None:
            owned_redis = Redis.from_url(REDIS_URL, decode_responses=True)
            app.state.service = PaymentDispatchService(owned_redis)
        await app.state.service.start()
        try:
            yield
        finally:
            await app.state.service.stop()
            if owned_redis is not None:
                await owned_redis.aclose()
                app.state.service = None

    app = FastAPI(title="Payment Dispatch API", version="1.0.0", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        logger.warning(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.post("/payments", status_code=200)
    async def payments_endpoint(payment: dict):
        await app.state.service.create_payment(payment.get("correlationId"), payment.get("amount"))
        return

    @app.get("/payments-summary")
    async def payments_summary_endpoint(
        from_datetime: str = Query(None, alias="from"),
        to_datetime: str = Query(None, alias="to"),
    ):
        return await app.state.service.get_summary(from_datetime, to_datetime)

    @app.get("/health", status_code=200)
    async def health():
        return app.state.service.health_report()

    return app


app = create_app()
