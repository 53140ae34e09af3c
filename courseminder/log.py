from __future__ import annotations

import logging
import sys

from loguru import logger

CONSOLE_FORMAT = (
  "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
  "<cyan>{extra[component]}</cyan> | <level>{message}</level>"
)

_configured = False


class InterceptHandler(logging.Handler):
  def emit(self, record: logging.LogRecord) -> None:
    try:
      level = logger.level(record.levelname).name
    except ValueError:
      level = record.levelno

    frame, depth = logging.currentframe(), 2
    while frame and frame.f_code.co_filename == logging.__file__:
      frame = frame.f_back
      depth += 1

    logger.bind(component=record.name).opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(level: str = "INFO", *, json_logs: bool = False) -> None:
  global _configured
  if _configured:
    return
  logger.remove()
  logger.configure(extra={"component": "app"})
  if json_logs:
    logger.add(sys.stdout, level=level.upper(), serialize=True, backtrace=False)
  else:
    logger.add(sys.stdout, level=level.upper(), format=CONSOLE_FORMAT, colorize=True, backtrace=True)

  logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
  for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "sqlalchemy.engine"):
    std = logging.getLogger(name)
    std.handlers = [InterceptHandler()]
    std.propagate = False
  _configured = True


def get_logger(component: str):
  return logger.bind(component=component)
