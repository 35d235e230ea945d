from logging.config import dictConfig
from typing import Any

import structlog

from common.logging.std_logging_config import StdLoggingConfig, build_logger_config
from common.utils.utils import deep_merge


def setup_logging(logging_config: dict[str, Any] | None = None, level: str | None = None) -> None:
    dictConfig(deep_merge(build_logger_config(level), logging_config or {}))

    structlog.configure(
        processors=StdLoggingConfig.structlog_processors,
        # Imitates the API of `logging.Logger` and hands records to the stdlib handlers above
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=StdLoggingConfig.logger_factory,
        # Freeze configuration after the first bound logger is created
        cache_logger_on_first_use=True,
    )
