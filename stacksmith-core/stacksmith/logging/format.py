"""
Log formatting for stacksmith.

Records logged on behalf of a single resource (see ``resource_logger``) carry the stack name and the logical id
of the resource, which are rendered as ``[stack/LogicalId]`` after the logger name::

    2024-05-02T10:11:12.345  INFO [apply_0] engine.executor [shop/Database] : Created Database Database
"""

import logging
from typing import Optional

MAX_NAME_LEN = 24
ROOT_LOGGER_PREFIX = "stacksmith."

LOG_FORMAT = (
    f"%(asctime)s.%(msecs)03d %(smith_level)5s [%(threadName)s] %(smith_name)-{MAX_NAME_LEN}s"
    "%(smith_context)s : %(message)s"
)
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

CUSTOM_LEVEL_NAMES = {
    50: "FATAL",
    40: "ERROR",
    30: "WARN",
    20: "INFO",
    10: "DEBUG",
}


def resource_logger(name: str, stack_name: str, logical_id: str) -> logging.LoggerAdapter:
    """Returns a logger whose records are attributed to the resource ``logical_id`` of ``stack_name``."""
    return logging.LoggerAdapter(
        logging.getLogger(name), {"smith_stack": stack_name, "smith_resource": logical_id}
    )


class DefaultFormatter(logging.Formatter):
    """
    A formatter that uses ``LOG_FORMAT`` and ``LOG_DATE_FORMAT``.
    """

    def __init__(self, fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT):
        super().__init__(fmt=fmt, datefmt=datefmt)


class AddStackContext(logging.Filter):
    """
    Filter that adds the attributes used by ``LOG_FORMAT`` to a log record:

    - smith_level: the level name, at most 5 characters long
    - smith_name: the logger name relative to the ``stacksmith`` package (see ``shorten_logger_name``)
    - smith_context: `` [stack/LogicalId]`` for records of a resource logger, empty otherwise
    """

    def __init__(self, max_name_len: Optional[int] = None):
        super().__init__()
        self.max_name_len = max_name_len or MAX_NAME_LEN

    def filter(self, record):
        record.smith_level = CUSTOM_LEVEL_NAMES.get(record.levelno, record.levelname)
        record.smith_name = shorten_logger_name(record.name, self.max_name_len)
        record.smith_context = format_resource_context(
            getattr(record, "smith_stack", None), getattr(record, "smith_resource", None)
        )
        return True


def format_resource_context(stack_name: Optional[str], logical_id: Optional[str]) -> str:
    if not logical_id:
        return ""
    if stack_name:
        return f" [{stack_name}/{logical_id}]"
    return f" [{logical_id}]"


def shorten_logger_name(name: str, length: int) -> str:
    """
    Shortens a logger name to at most ``length`` characters. The ``stacksmith.`` prefix is dropped, then leading
    package names are dropped until the name fits, e.g. ``stacksmith.services.local.provider`` with length 14
    turns into ``local.provider``. If the last part alone is too long, its tail is kept.
    """
    if name.startswith(ROOT_LOGGER_PREFIX):
        name = name[len(ROOT_LOGGER_PREFIX) :]

    parts = name.split(".")
    while len(parts) > 1 and len(".".join(parts)) > length:
        parts.pop(0)

    return ".".join(parts)[-length:]
