import logging
import os
from typing import Any, List, Tuple, Union

from stacksmith import constants
from stacksmith.constants import (
    CONFIG_DIR,
    LOG_LEVELS,
    TRACE_LOG_LEVELS,
    TRUE_STRINGS,
)

LOG = logging.getLogger(__name__)


def eval_log_type(env_var_name: str) -> Union[str, bool]:
    """Get the log type from environment variable"""
    smith_log = os.environ.get(env_var_name, "").lower().strip()
    return smith_log if smith_log in LOG_LEVELS else False


def is_env_true(env_var_name: str) -> bool:
    """Whether the given environment variable has a truthy value."""
    return os.environ.get(env_var_name, "").lower().strip() in TRUE_STRINGS


def _env_number(env_var_name: str, default: float, cast=float):
    value = os.environ.get(env_var_name, "").strip()
    if not value:
        return default
    try:
        return cast(value)
    except ValueError:
        LOG.warning("Ignoring invalid value %r for %s, using %s", value, env_var_name, default)
        return default


def load_environment(profiles: str = None, env=os.environ) -> List[str]:
    """Loads the environment variables from ~/.stacksmith/{profile}.env, for each profile listed in the profiles.
    :param env: environment to load profile to. Defaults to `os.environ`
    :param profiles: a comma separated list of profiles to load (defaults to "default")
    :returns str: the list of the actually loaded profiles (might be the fallback)
    """
    if not profiles:
        profiles = "default"

    profiles = profiles.split(",")
    environment = {}
    import dotenv

    for profile in profiles:
        profile = profile.strip()
        path = os.path.join(CONFIG_DIR, f"{profile}.env")
        if not os.path.exists(path):
            continue
        environment.update(dotenv.dotenv_values(path))

    for k, v in environment.items():
        # we do not want to override the environment
        if k not in env and v is not None:
            env[k] = v

    return profiles


# CLI specific: the configuration profile to load
CONFIG_PROFILE = os.environ.get("CONFIG_PROFILE", "").strip()

# keep this on top to populate environment
# CLI specific: the actually loaded configuration profile
LOADED_PROFILES = load_environment(CONFIG_PROFILE)

# whether debug logging is enabled
DEBUG = is_env_true("DEBUG")

# log level, one of LOG_LEVELS
SMITH_LOG = eval_log_type("SMITH_LOG")

# directory where stack state files and their lock files are kept
STATE_DIR = os.environ.get("SMITH_STATE_DIR", "").strip() or constants.DEFAULT_STATE_DIR

# defaults for the explicit stack configuration
STAGE = os.environ.get("SMITH_STAGE", "").strip() or constants.DEFAULT_STAGE
REGION = os.environ.get("SMITH_REGION", "").strip() or constants.DEFAULT_REGION
ACCOUNT = os.environ.get("SMITH_ACCOUNT", "").strip() or constants.DEFAULT_ACCOUNT_ID

# number of resource operations the executor runs concurrently
APPLY_MAX_WORKERS = _env_number("SMITH_APPLY_MAX_WORKERS", 4, int)

# upper bound (seconds) for a single resource operation
PER_RESOURCE_TIMEOUT = _env_number("SMITH_PER_RESOURCE_TIMEOUT", 300.0)

# seconds between two polls of an in-progress resource operation
PROVIDER_POLL_INTERVAL = _env_number("SMITH_PROVIDER_POLL_INTERVAL", 1.0)

# seconds to wait for the single-writer stack lock
STATE_LOCK_TIMEOUT = _env_number("SMITH_STATE_LOCK_TIMEOUT", 60.0)

# log resource provider errors including stack traces
VERBOSE_ERRORS = is_env_true("SMITH_VERBOSE_ERRORS")

# treat resources without a provider as successfully applied
IGNORE_UNSUPPORTED_RESOURCE_TYPES = is_env_true("SMITH_IGNORE_UNSUPPORTED_RESOURCE_TYPES")


def is_trace_logging_enabled():
    if SMITH_LOG:
        log_level = str(SMITH_LOG).upper()
        return log_level.lower() in TRACE_LOG_LEVELS
    return False


def collect_config_items() -> List[Tuple[str, Any]]:
    """Returns a list of key-value tuples of stacksmith configuration values."""
    none = object()  # sentinel object

    result = []
    for name in (
        "DEBUG",
        "SMITH_LOG",
        "STATE_DIR",
        "STAGE",
        "REGION",
        "ACCOUNT",
        "APPLY_MAX_WORKERS",
        "PER_RESOURCE_TIMEOUT",
        "PROVIDER_POLL_INTERVAL",
        "STATE_LOCK_TIMEOUT",
        "VERBOSE_ERRORS",
        "IGNORE_UNSUPPORTED_RESOURCE_TYPES",
    ):
        value = globals().get(name, none)
        if value is none:
            continue
        result.append((name, value))
    result.sort()
    return result
