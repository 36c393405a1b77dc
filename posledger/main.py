# posledger/main.py
import logging
import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import events, table_lock
from .auth import router as auth_router
from .db import SessionLocal, engine, ensure_tables
from .errors import PosError
from .routers.orders import router as orders_router
from .routers.payments import router as payments_router
from .routers.shifts import router as shifts_router
from .routers.staff import router as staff_router
from .routers.terminals import router as terminals_router
from .utils.config import APP_NAME, APP_VERSION, CORS_ORIGINS

logging.basicConfig(level=logging.INFO, format="[posledger] %(levelname)s %(name)s: %(message)s")
log = logging.getLogger("posledger.main")

app = FastAPI(title=APP_NAME, version=APP_VERSION)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if CORS_ORIGINS == ["*"] else CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------------
# error mapping
# ------------------------------
@app.exception_handler(PosError)
async def pos_error_handler(request: Request, exc: PosError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "code": "VALIDATION_ERROR",
                 "fields": [".".join(str(p) for p in e.get("loc", ())) for e in exc.errors()]},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    log.exception(f"unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ------------------------------
# startup
# ------------------------------
@app.on_event("startup")
def on_startup():
    ensure_tables(engine)
    db = SessionLocal()
    try:
        freed = table_lock.sweep_orphaned_locks(db)
        db.commit()
        ids = events.take_pending(db)
        if ids:
            events.deliver(engine, ids)
        events.redeliver_pending(db)
        if freed:
            log.warning(f"startup sweep freed tables {freed}")
    except Exception as e:
        db.rollback()
        log.warning(f"startup sweep failed: {e!r}")
    finally:
        db.close()


@app.get("/healthz")
def healthz():
    return {"ok": True, "service": APP_NAME, "version": APP_VERSION}


app.include_router(auth_router)
app.include_router(terminals_router)
app.include_router(shifts_router)
app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(staff_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("posledger.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
