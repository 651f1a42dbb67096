import logging

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def setup_logging(level="INFO", log_file=None):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format=LOG_FORMAT, handlers=handlers)


def get_logger(name="controller"):
    return logging.getLogger(f"staged_rollout.{name}")
