import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path


def setup_logging(
    log_name: str = 'rate_gate',
    verbose_console_logging: bool = True,
    log_dir: Path | None = None,
) -> logging.Logger:
    """Set up logging with both file and console handlers.

    Handlers go on the root logger so every module's
    ``logging.getLogger(__name__)`` logger is captured.

    Args:
        log_name: Name for the log file inside log_dir
        verbose_console_logging: If True, console shows INFO level; if False, shows WARNING level
        log_dir: Directory for the rotating log file (default: logs/ beside this file)

    Returns:
        The configured root logger
    """
    logger = logging.getLogger()

    # Guard against adding duplicate handlers on repeated calls
    if any(getattr(h, '_rate_gate_handler', False) for h in logger.handlers):
        return logger

    logger.setLevel(logging.INFO)

    if log_dir is None:
        log_dir = Path(__file__).parent / 'logs'
    log_dir.mkdir(parents=True, exist_ok=True)

    # File handler (rotating)
    file_formatter = logging.Formatter('%(asctime)s|%(name)s|%(levelname)s|%(funcName)s|%(lineno)d|%(message)s')
    file_handler = RotatingFileHandler(
        log_dir / f'{log_name}.log',
        maxBytes=1024 * 1024,  # 1 MB
        backupCount=5,
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(file_formatter)

    # Console handler
    console_formatter = logging.Formatter('%(funcName)s|%(lineno)d|%(message)s')
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO if verbose_console_logging else logging.WARNING)
    console_handler.setFormatter(console_formatter)

    for handler in (file_handler, console_handler):
        handler._rate_gate_handler = True
        logger.addHandler(handler)

    return logger
