import os
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger
from custody.routers import wallet, admin
from custody.core.deps import get_scanner
from custody.core.redis import get_redis, close_redis
from custody.exceptions import CustodyError
from custody.logging_setup import configure_logging

scheduler = AsyncIOScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await get_redis()
    scanner = get_scanner()
    scanner.schedule(scheduler)
    scheduler.start()
    logger.info(f"Deposit scanner scheduled for chains: {', '.join(scanner.chains) or 'none'}")
    yield
    await scanner.shutdown()
    await close_redis()


app = FastAPI(title="Custody Settlement API", lifespan=lifespan)

_cors_origins_env = os.environ.get("CORS_ORIGINS", "")
_allowed_origins = [o.strip() for o in _cors_origins_env.split(",") if o.strip()] or ["http://localhost:3000"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CustodyError)
async def custody_error_handler(request: Request, exc: CustodyError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


app.include_router(wallet.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
