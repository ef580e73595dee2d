import logging

LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def setup_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')


def get_logger(name="rollout_engine"):
    return logging.getLogger(f"rollout_engine.{name}")
