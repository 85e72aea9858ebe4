"""
Logging helpers shared by the whole package.

Registers a TRACE level below DEBUG for the very chatty parts
(unknown SSL properties, forced-close failures).
"""
import logging

TRACE = 5
logging.addLevelName(TRACE, "TRACE")


def setup_logging(level: int = logging.INFO):
    """
    Configures the global logging settings for applications embedding mqtt_link.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )
