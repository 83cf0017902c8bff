from functools import lru_cache
import logging
from loguru import logger
from utils.file import log_dir, sanitize_filename


log_format = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[run_id]} | {name}:{function}:{line} - {message}"


logger.configure(extra={"run_id": ""})


litellm_logger = logging.getLogger("litellm")
litellm_logger.setLevel(logging.ERROR)



@lru_cache(maxsize=None)
def init_logger(file_name: str) -> int:
    """Single-file log, used by test modules and one-off scripts."""
    logger.remove()
    log_path = log_dir / f"{file_name}.log"
    if log_path.exists():
        log_path.unlink()
    sink_id = logger.add(
        log_path,
        format=log_format,
        rotation="10 MB",
        level="DEBUG",
        enqueue=False,
        backtrace=True,
        diagnose=True,
    )
    return sink_id



@lru_cache(maxsize=None)
def init_logger_by_runid(file_name: str) -> int:
    """
    Process-wide log. Records bound to a run_id go to their own file via ensure_run_logger.
    """
    logger.remove()
    log_path = log_dir / f"{file_name}.log"
    if log_path.exists():
        log_path.unlink()
    return logger.add(
        log_path,
        filter=lambda record: not record["extra"].get("run_id"),
        format=log_format,
        rotation="00:00",
        level="DEBUG",
        enqueue=True,
        backtrace=True,
        diagnose=True,
    )



@lru_cache(maxsize=None)
def ensure_run_logger(run_id: str) -> int:
    log_path = log_dir / f"{sanitize_filename(run_id)}.log"
    return logger.add(
        log_path,
        filter=lambda record: record["extra"].get("run_id") == run_id,
        format=log_format,
        rotation="10 MB",
        level="DEBUG",
        enqueue=True,
        backtrace=True,
        diagnose=True,
    )
