import logging

from config import LOG_LEVEL


def setup_logging(level=LOG_LEVEL):
    """Configure the root logger once for the whole application."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
