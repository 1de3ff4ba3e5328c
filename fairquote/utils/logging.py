import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logger(name: str = "fairquote", level: int | str = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(name)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)
    # 控制台 handler（重复调用不会叠加）
    if not any(getattr(h, "_fairquote_console", False) for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        ch._fairquote_console = True  # type: ignore[attr-defined]
        logger.addHandler(ch)
    return logger
