import logging

LOG_FORMAT = "%(asctime)s %(name)-12s - %(levelname)6s - %(message)s"
ROOT_LOGGER = "pvc_autoscaler"


def parse_level(level: str | int | None) -> int:
    """Return the logging level for a name like "debug"; unknown names mean INFO."""
    if isinstance(level, int):
        return level
    if not level:
        return logging.INFO
    value = logging.getLevelName(level.strip().upper())
    return value if isinstance(value, int) else logging.INFO


class AutoscalerLogger:
    def __init__(
        self, name: str, level: str | int | None = None, log_file: str | None = None
    ):
        handlers: list[logging.Handler] = [logging.StreamHandler()]
        if log_file:
            handlers.append(logging.FileHandler(log_file))
        lvl = parse_level(level)
        for h in handlers:
            h.setLevel(lvl)
        logging.basicConfig(level=lvl, format=LOG_FORMAT, handlers=handlers)
        logging.getLogger(ROOT_LOGGER).setLevel(lvl)
        self.logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")


def get_logger(component: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{component}")
