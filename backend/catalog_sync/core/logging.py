import logging
import os
import sys
from typing import IO, Iterable, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DEFAULT_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# 第三方库的连接/重试日志，只在 DEBUG 下放出来
NOISY_LOGGERS = ("urllib3", "kombu", "celery.bootsteps")


def configure_logging(
    level: Optional[str] = None,
    *,
    stream: Optional[IO[str]] = None,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> logging.Logger:
    """
    给 root logger 挂一个输出 handler 并设置级别；重复调用只调整级别。
    CLI 把 JSON 结果写在 stdout，所以它传 stream=sys.stderr，worker 和脚本默认走 stdout。
    """
    resolved = (level or DEFAULT_LEVEL).upper()
    root = logging.getLogger()

    if root.handlers:
        root.setLevel(resolved)
    else:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(resolved)

    floor = max(logging.WARNING, root.level) if root.level > logging.DEBUG else logging.DEBUG
    for name in quiet:
        logging.getLogger(name).setLevel(floor)

    logging.captureWarnings(True)
    return logging.getLogger("catalog_sync")
