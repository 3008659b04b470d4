import logging
import sys

from tapegrad.environment import Environment


def _config_logger(level, filename):
    logger = logging.getLogger("tapegrad")
    logger.setLevel(level)
    if filename is None:
        handler = logging.StreamHandler(sys.stdout)
    else:
        handler = logging.FileHandler(filename)
    handler.setLevel(level)
    formatter = logging.Formatter(
        "[%(asctime)s] [%(filename)s:%(lineno)s] [%(levelname)s] %(message)s"
    )
    handler.setFormatter(formatter)
    logger.handlers = [handler]
    logger.propagate = False
    return logger


class LoggerManager:
    _instance = None

    @classmethod
    def instance(cls):
        if cls._instance is None:
            cls._instance = LoggerManager()
        return cls._instance

    def __init__(self):
        env = Environment.instance()
        level = logging.getLevelName(str(env.get("LOG_LEVEL")).upper())
        if not isinstance(level, int):
            level = logging.WARNING
        self.logger: logging.Logger = _config_logger(level, env.get("LOG_FILE"))

    def set_level(self, level):
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)
