"""日志配置模块：统一全局日志格式，并为每条记录附加请求上下文。

请求上下文包含两项：
- request_id：由 RequestIdMiddleware 写入；
- owner_id：解析 X-Owner-Id 后由依赖写入，便于按所有者排查目录树问题。
"""

import json
import logging
import logging.config
import sys
from contextvars import ContextVar
from datetime import datetime
from typing import Optional

from .config import get_settings

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_owner_id_ctx: ContextVar[Optional[str]] = ContextVar("owner_id", default=None)

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s|%(owner_id)s] %(message)s"

# 第三方 SDK 的调试日志过于冗长，固定在 WARNING
_QUIET_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3")


class _TZFormatter(logging.Formatter):
    """按 Settings.timezone 渲染时间戳。"""

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: D401
        dt = datetime.fromtimestamp(record.created, get_settings().timezone_info)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(sep=" ", timespec="milliseconds")


class ColorFormatter(_TZFormatter):
    """终端彩色输出，非 TTY 时退化为纯文本。"""

    RESET = "\033[0m"
    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }

    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_colors: Optional[bool] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_colors = sys.stderr.isatty() if use_colors is None else use_colors

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelno) if self.use_colors else None
        return f"{color}{message}{self.RESET}" if color else message


class JsonFormatter(_TZFormatter):
    """结构化 JSON 日志，每行一条记录。"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "logger": record.name,
            "level": record.levelname,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "owner_id": getattr(record, "owner_id", None),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.request_id = _request_id_ctx.get() or "-"
        record.owner_id = _owner_id_ctx.get() or "-"
        return True


def setup_logging() -> None:
    """初始化日志系统：控制台 + 按天轮转的文件，格式由 LOG_JSON 决定。"""
    settings = get_settings()
    settings.log_directory.mkdir(parents=True, exist_ok=True)

    formatter_name = "json" if settings.log_json else "standard"
    handlers = ["default", "file"]
    scoped = {"handlers": handlers, "level": settings.log_level, "propagate": False}

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"()": "app.packages.drive.core.logger.ColorFormatter", "fmt": _LOG_FORMAT},
            "plain": {"()": "app.packages.drive.core.logger._TZFormatter", "fmt": _LOG_FORMAT},
            "json": {"()": "app.packages.drive.core.logger.JsonFormatter"},
        },
        "filters": {
            "request_context": {"()": "app.packages.drive.core.logger.RequestContextFilter"},
        },
        "handlers": {
            "default": {
                "level": settings.log_level,
                "class": "logging.StreamHandler",
                "formatter": formatter_name,
                "filters": ["request_context"],
            },
            "file": {
                "level": settings.log_level,
                "class": "logging.handlers.TimedRotatingFileHandler",
                "formatter": "json" if settings.log_json else "plain",
                "filename": str(settings.log_file_path),
                "when": "midnight",
                "backupCount": settings.log_backup_days,
                "encoding": "utf-8",
                "delay": True,
                "filters": ["request_context"],
            },
        },
        "loggers": {
            "uvicorn": dict(scoped),
            "uvicorn.error": dict(scoped),
            "uvicorn.access": dict(scoped),
            "app": dict(scoped),
            **{name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
        },
        "root": {"handlers": handlers, "level": settings.log_level},
    }
    logging.config.dictConfig(logging_config)


logger = logging.getLogger("app")


def set_request_id(request_id: Optional[str]) -> None:
    _request_id_ctx.set(request_id)


def set_owner_id(owner_id: Optional[str]) -> None:
    _owner_id_ctx.set(owner_id)
