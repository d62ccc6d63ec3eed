# logging_config.py
import logging
import logging.config
import logging.handlers
from pathlib import Path
from datetime import datetime
import json
import contextvars

from config import settings

# Matching run identifier (kept in a ContextVar so concurrent runs do not mix)
_run_id_ctx = contextvars.ContextVar("run_id", default="-")

class RunIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _run_id_ctx.get("-")
        return True

def set_run_id(run_id: str):
    _run_id_ctx.set(run_id)

def get_run_id() -> str:
    return _run_id_ctx.get("-")

def get_logger(name: str = __name__) -> logging.Logger:
    return logging.getLogger(name)


def build_dict_config(json_fmt: bool = False, log_dir: str | None = None) -> dict:
    fmt = (
        '{"ts":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s",'
        '"run_id":"%(run_id)s","msg":"%(message)s"}'
        if json_fmt
        else '%(asctime)s | %(levelname)s | %(name)s | run=%(run_id)s | %(message)s'
    )
    directory = Path(log_dir or settings.LOG_DIR)
    directory.mkdir(parents=True, exist_ok=True)

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "run_id": {"()": RunIdFilter},
        },
        "formatters": {
            "default": {
                "format": fmt,
                "datefmt": "%Y-%m-%d %H:%M:%S",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "INFO",
                "formatter": "default",
                "filters": ["run_id"],
            },
            "file_app": {
                "class": "logging.handlers.TimedRotatingFileHandler",
                "level": "INFO",
                "formatter": "default",
                "filters": ["run_id"],
                "filename": str(directory / "app.log"),
                "when": "midnight",
                "interval": 1,
                "backupCount": 30,
                "encoding": "utf-8",
            },
            "file_matching": {
                "class": "logging.handlers.TimedRotatingFileHandler",
                "level": "DEBUG",
                "formatter": "default",
                "filters": ["run_id"],
                "filename": str(directory / "matching.log"),
                "when": "midnight",
                "interval": 1,
                "backupCount": 30,
                "encoding": "utf-8",
            },
        },
        "loggers": {
            "": {
                "level": "INFO",
                "handlers": ["console", "file_app"],
            },
            # orchestrator, analyzers and evaluator all log under "matching.*"
            "matching": {
                "level": "DEBUG",
                "handlers": ["console", "file_matching"],
                "propagate": False,
            },
            "aiohttp": {"level": "WARNING"},
            "openai": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
        },
    }

def setup_logging(json_fmt: bool | None = None, log_dir: str | None = None):
    if json_fmt is None:
        json_fmt = settings.LOG_JSON
    logging.config.dictConfig(build_dict_config(json_fmt=json_fmt, log_dir=log_dir))


def log_match_event(event_type: str, details: dict, logger: logging.Logger | None = None):
    logger = logger or get_logger("matching.events")
    logger.info("MATCH_EVENT: %s", json.dumps({
        "timestamp": datetime.now().isoformat(),
        "event_type": event_type,
        "run_id": get_run_id(),
        "details": details,
    }, ensure_ascii=False, default=str))

def log_degradation(provider: str, reason: str, item_id: str | None = None,
                    logger: logging.Logger | None = None):
    logger = logger or get_logger("matching.degraded")
    logger.warning("provider degraded: provider=%s item=%s reason=%s", provider, item_id or "-", reason)

def log_run_summary(summary: dict, logger: logging.Logger | None = None):
    logger = logger or get_logger("matching.events")
    payload = {
        'target_id': summary.get('target_id'),
        'pool_size': summary.get('pool_size', 0),
        'filtered_out': summary.get('filtered_out', 0),
        'scored': summary.get('scored', 0),
        'failed': summary.get('failed', 0),
        'returned': summary.get('returned', 0),
        'notify': summary.get('notify', 0),
        'used_fallback': summary.get('used_fallback', False),
        'duration_ms': summary.get('duration_ms', 0),
    }
    logger.info("matching run finished: %s", json.dumps(payload, ensure_ascii=False))
