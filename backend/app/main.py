import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import Response

from app.core.config import settings
from app.core.errors import BillingError
from app.routers import automation, customers, gateway_events, plans, subscriptions

logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "Customers", "description": "Create customers and link them to the payment gateway."},
    {"name": "Plans", "description": "Manage subscription plans and their gateway catalog entries."},
    {"name": "Subscriptions", "description": "Subscription lifecycle, plan changes and gateway sync."},
    {"name": "Gateway Events", "description": "Apply verified payment gateway events exactly once."},
    {"name": "Automation", "description": "Trigger billing, renewal and expiration sweeps."},
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Subscription lifecycle and billing orchestration API. "
        "Keeps local subscriptions, plans and customers in step with the payment gateway."
    ),
    openapi_tags=OPENAPI_TAGS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count"],
)


@app.middleware("http")
async def options_handler(request: Request, call_next):  # type: ignore[no-untyped-def]
    if request.method == "OPTIONS":
        origin = request.headers.get("origin", "*")
        return Response(
            status_code=200,
            headers={
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Methods": "*",
                "Access-Control-Allow-Headers": "*",
                "Access-Control-Allow-Credentials": "true",
                "Access-Control-Max-Age": "86400",
            },
        )
    return await call_next(request)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(customers.router, prefix="/v1/customers", tags=["Customers"])
app.include_router(plans.router, prefix="/v1/plans", tags=["Plans"])
app.include_router(subscriptions.router, prefix="/v1/subscriptions", tags=["Subscriptions"])
app.include_router(
    gateway_events.router,
    prefix="/v1/gateway_events",
    tags=["Gateway Events"],
)
app.include_router(automation.router, prefix="/v1/automation", tags=["Automation"])


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "domain": settings.APP_DOMAIN,
        "status": "running",
    }
