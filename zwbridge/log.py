"""Package logger shared by every bridge module."""

# std libraries
import logging

LOGGER = logging.getLogger("zwbridge")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# -v count to level; anything past the end is DEBUG
VERBOSITY_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG]


def set_basic_config(verbosity: int = 0) -> int:
    """Configure root logging for the given -v count and return the level used.

    The zwave_js_server logger follows the bridge level so that -vv also shows
    the websocket traffic.
    """
    level = VERBOSITY_LEVELS[min(max(verbosity, 0), len(VERBOSITY_LEVELS) - 1)]
    logging.basicConfig(level=level, format=LOG_FORMAT)
    LOGGER.setLevel(level)
    logging.getLogger("zwave_js_server").setLevel(level)
    return level
