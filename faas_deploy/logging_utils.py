import logging
import sys
from typing import Optional


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(verbosity: int = 0, log_file: Optional[str] = None) -> None:
    level = logging.INFO
    if verbosity >= 1:
        level = logging.DEBUG

    # stdout 은 CLI 진행 출력 전용으로 두고 로그는 stderr 로 보낸다.
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(level)
    handlers: list[logging.Handler] = [stream_handler]

    if log_file:
        # API 요청/응답 추적용 파일에는 항상 DEBUG 까지 남긴다.
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.DEBUG if log_file else level,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
