"""
Deck import FastAPI application entry point.
"""
import logging
import uuid
from contextvars import ContextVar

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.routes.health import router as health_router
from app.routes.import_route import router as import_router

# Request ID context variable
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Custom logging filter to add request_id
class RequestIDFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("")
        return True

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s request_id=%(request_id)s"
)

# Filter on the handlers so records from every logger get request_id
for handler in logging.getLogger().handlers:
    handler.addFilter(RequestIDFilter())

# Create FastAPI app
app = FastAPI(
    title="Deck Import",
    description="Deck and collection import jobs for Commander decks",
    version="0.1.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ID middleware
@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    request_id_var.set(request_id)

    # Log request start
    logger = logging.getLogger("app.request")
    logger.info(
        f"Request started method={request.method} url={str(request.url)} client_ip={request.client.host if request.client else 'unknown'}"
    )

    response = await call_next(request)

    # Log request completion
    logger.info(
        f"Request completed status_code={response.status_code}"
    )
    response.headers["X-Request-Id"] = request_id

    return response

# Include routers
app.include_router(health_router, tags=["health"])
app.include_router(import_router, tags=["import"])
