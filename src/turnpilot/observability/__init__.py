from turnpilot.observability.logger import (
    bind_run,
    clear_run,
    get_logger,
    setup_logging,
    setup_logging_from_settings,
)

__all__ = ["bind_run", "clear_run", "get_logger", "setup_logging", "setup_logging_from_settings"]
