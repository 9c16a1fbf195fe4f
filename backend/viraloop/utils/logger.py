import logging

import structlog

from viraloop.utils.config import config, EnvMode

LOGGING_LEVEL = logging.getLevelNamesMapping().get(config.LOGGING_LEVEL, logging.INFO)

# dict_tracebacks pairs with JSONRenderer, format_exc_info with ConsoleRenderer
if config.ENV_MODE in (EnvMode.LOCAL, EnvMode.STAGING):
    _exception_processor = structlog.processors.format_exc_info
    _renderers = [structlog.dev.ConsoleRenderer(colors=True)]
else:
    _exception_processor = structlog.processors.dict_tracebacks
    _renderers = [structlog.processors.JSONRenderer()]

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        _exception_processor,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        *_renderers,
    ],
    cache_logger_on_first_use=True,
    wrapper_class=structlog.make_filtering_bound_logger(LOGGING_LEVEL),
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger()
