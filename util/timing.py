# util/timing.py
import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional


@contextmanager
def timed(
    logger: logging.Logger, name: str, *, slow_ms: Optional[int] = None, **kv: Any
) -> Iterator[None]:
    """
    Usage:
      with timed(logger, "chain.confirm", slow_ms=60_000, tx=tx_ref):
          ...
    One line on exit, also when the block raises (ok=False):
      "<name>.done ms=<int> ok=<bool> key=val ..."
    At or past slow_ms the line is logged as WARNING.
    """
    t0 = time.monotonic()
    ok = False
    try:
        yield
        ok = True
    finally:
        dt_ms = int((time.monotonic() - t0) * 1000)
        level = logging.INFO
        if slow_ms is not None and dt_ms >= slow_ms:
            level = logging.WARNING
        suffix = "".join(f" {k}={v}" for k, v in kv.items())
        logger.log(level, "%s.done ms=%d ok=%s%s", name, dt_ms, ok, suffix)
