from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import logger, APP_NAME, ALLOWED_ORIGINS  # type: ignore
from core.errors import DataStoreUnavailable

# Routers
from routers import track, affiliates, admin, closer  # type: ignore

app = FastAPI(title=APP_NAME)

# ---- CORS setup ----
_default_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS or _default_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Security headers ---
@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    return response


@app.exception_handler(DataStoreUnavailable)
async def _store_unavailable(request: Request, exc: DataStoreUnavailable):
    logger.error(f"[app] store unavailable path={request.url.path}: {exc}")
    return JSONResponse({"error": "Service temporarily unavailable"}, status_code=503)


app.include_router(track.router)
app.include_router(affiliates.router)
app.include_router(admin.router)
app.include_router(closer.router)


@app.on_event("startup")
async def _init_schema():
    try:
        from core.database import init_db
        init_db()
    except Exception as _ex:
        logger.warning(f"init_db failed: {_ex}")


@app.get("/api/health")
async def health():
    return {"ok": True, "service": APP_NAME}
