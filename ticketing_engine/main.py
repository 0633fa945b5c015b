# ticketing_engine/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ticketing_engine.config import Settings, load_settings
from ticketing_engine.database import create_store
from ticketing_engine.engine import TicketingEngine
from ticketing_engine.errors import TicketingError
from ticketing_engine.routes import customer, event_manager, tickets
from ticketing_engine.store import ConditionalStore
from ticketing_engine.utils.payments import PaymentGatewayError

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, store: Optional[ConditionalStore] = None,
               engine: Optional[TicketingEngine] = None) -> FastAPI:
    if engine is None:
        settings = settings or load_settings()
        engine = TicketingEngine(store or create_store(settings), settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine.start_background_tasks()
        yield
        await engine.stop_background_tasks()

    app = FastAPI(title="Event Ticketing Engine", lifespan=lifespan)
    app.state.engine = engine

    @app.exception_handler(TicketingError)
    async def ticketing_error_handler(request: Request, exc: TicketingError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(PaymentGatewayError)
    async def gateway_error_handler(request: Request, exc: PaymentGatewayError):
        return JSONResponse(status_code=502, content={"detail": str(exc), "code": "payment_gateway_error"})

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    # Include routers with appropriate prefixes
    app.include_router(event_manager.router, prefix="/manager", tags=["Event Manager"])
    app.include_router(customer.router, prefix="/customer", tags=["Customer"])
    app.include_router(tickets.router, prefix="/tickets", tags=["Tickets"])
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
