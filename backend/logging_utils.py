import json
import logging
import os

# Configure root logging once
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
log = logging.getLogger("gateway")


def _emit(level: int, msg: str, kw: dict):
    try:
        if kw:
            ctx = " ".join(f"{k}={json.dumps(v, ensure_ascii=False, default=str)}" for k, v in kw.items())
            log.log(level, f"{msg} | {ctx}")
        else:
            log.log(level, msg)
    except Exception as e:
        log.log(level, f"{msg} | logging_error={e}")


def jlog(msg: str, **kw):
    """Log a message with JSON-ish context; values must be JSON-serializable."""
    _emit(logging.INFO, msg, kw)


def jwarn(msg: str, **kw):
    _emit(logging.WARNING, msg, kw)


def jerror(msg: str, **kw):
    _emit(logging.ERROR, msg, kw)
