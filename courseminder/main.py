from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from courseminder.config import settings
from courseminder.db import SessionLocal
from courseminder.errors import CourseminderError
from courseminder.log import configure_logging, get_logger
from courseminder.metrics import sweep_metrics
from courseminder.routers.calendar import router as calendar_router
from courseminder.routers.delivery import router as delivery_router
from courseminder.routers.hooks import router as hooks_router
from courseminder.routers.notifications import router as notifications_router
from courseminder.routers.reminders import router as reminders_router
from courseminder.routers.system_status import router as system_status_router
from courseminder.worker import ReminderSweeper

logger = get_logger("main")

app = FastAPI(title="CourseMinder API", version="0.1.0")


@app.exception_handler(CourseminderError)
async def _domain_error_handler(_, exc: CourseminderError) -> JSONResponse:
  return JSONResponse(status_code=exc.status_code, content={"detail": {"message": exc.message, "code": exc.error_code}})


app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origin_list(),
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)

app.include_router(hooks_router)
app.include_router(reminders_router)
app.include_router(delivery_router)
app.include_router(notifications_router)
app.include_router(calendar_router)
app.include_router(system_status_router)


@app.middleware("http")
async def _request_metrics_middleware(request, call_next):
  response = await call_next(request)
  sweep_metrics.observe_request(response.status_code)
  response.headers.setdefault("X-Content-Type-Options", "nosniff")
  return response


@app.get("/health")
async def health() -> dict:
  return {"ok": True}


@app.get("/version")
async def version() -> dict:
  return {"version": settings.app_version}


_sweeper: ReminderSweeper | None = None


@app.on_event("startup")
async def _startup() -> None:
  global _sweeper
  configure_logging(settings.log_level, json_logs=settings.log_json)
  if settings.reminder_sweep_enabled and _sweeper is None:
    _sweeper = ReminderSweeper(SessionLocal)
    _sweeper.start()
  logger.info(f"CourseMinder API {settings.app_version} started")


@app.on_event("shutdown")
async def _shutdown() -> None:
  global _sweeper
  if _sweeper is not None:
    await _sweeper.stop()
    _sweeper = None
