import logging
import time
from typing import Any

logger = logging.getLogger("refinery")
important_logger = logging.getLogger("refinery.IMPORTANT")

QUIET_LIBRARY_LOGGERS = ("httpx", "openai", "uvicorn.access")

# "<event>|<dedupe key>" -> time the line was last written
_last_written: dict[str, float] = {}


def safe_log_value(value: Any, *, max_len: int = 96) -> str:
    """Render one field value on a single line; None and blanks become '-'."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    text = " ".join(str(value if value is not None else "").split())
    if not text:
        return "-"
    return text if len(text) <= max_len else text[: max_len - 3] + "..."


def _recently_written(event: str, dedupe_key: str | None, window_s: float) -> bool:
    if not dedupe_key or window_s <= 0:
        return False
    token = f"{event}|{dedupe_key}"
    now = time.time()
    if now - _last_written.get(token, 0.0) < window_s:
        return True
    _last_written[token] = now
    return False


def log_important(
    event: str,
    *,
    level: int = logging.INFO,
    dedupe_key: str | None = None,
    dedupe_window_s: float = 0.0,
    **fields: Any,
) -> None:
    """
    Write a one-line milestone record, ``IMPORTANT <event> | k=v ...`` with sorted keys.

    With a `dedupe_key`, repeats of the same event and key inside `dedupe_window_s`
    are dropped, which keeps poll-driven warnings to one line per window.
    """
    name = safe_log_value(event, max_len=64)
    if _recently_written(name, dedupe_key, float(dedupe_window_s)):
        return
    line = f"IMPORTANT {name}"
    if fields:
        line += " | " + " ".join(f"{k}={safe_log_value(fields[k])}" for k in sorted(fields))
    important_logger.log(level, line)


def apply_runtime_log_levels(cfg: dict) -> None:
    verbose = bool((cfg or {}).get("verbose_logging"))
    # Verbose mode adds chunk/retry DEBUG lines and lets HTTP client chatter through.
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    important_logger.setLevel(logging.INFO)
    for name in QUIET_LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)
    log_important("logging.mode", dedupe_key=str(verbose), dedupe_window_s=0.5, verbose=verbose)
