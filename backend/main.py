from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from db.database import engine, Base
from auth.bootstrap import ensure_admin_account
from auth.routes import router as auth_router
from api.subscriptions import router as subscriptions_router
from api.deliveries import router as deliveries_router
from api.orders import router as orders_router
from api.admin import router as admin_router


settings.validate_security_configuration()

# Create all tables
Base.metadata.create_all(bind=engine)
ensure_admin_account()

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.SECURITY_HEADERS_ENABLED:
        return response
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    response.headers["Content-Security-Policy"] = settings.SECURITY_CSP
    return response

# Routers
app.include_router(auth_router, prefix="/api")
app.include_router(subscriptions_router, prefix="/api")
app.include_router(deliveries_router, prefix="/api")
app.include_router(orders_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "ok", "app": settings.APP_NAME, "timezone": settings.APP_TIMEZONE}
