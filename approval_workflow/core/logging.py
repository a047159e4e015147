import logging
import sys

from approval_workflow.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging() -> None:
    """
    애플리케이션 시작 시 한 번 호출.
    """
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # motor/pymongo 내부 로그는 WARNING 이상만
    logging.getLogger("pymongo").setLevel(logging.WARNING)
