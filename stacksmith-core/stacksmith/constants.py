import os

import stacksmith

# stacksmith version
VERSION = stacksmith.__version__

# truthy/falsy strings accepted in environment variables
TRUE_STRINGS = ("1", "true", "True")

# log levels accepted by SMITH_LOG
LOG_LEVELS = ("trace-internal", "trace", "debug", "info", "warn", "error", "warning")

SMITH_LOG_TRACE = "trace"
SMITH_LOG_TRACE_INTERNAL = "trace-internal"
TRACE_LOG_LEVELS = [SMITH_LOG_TRACE, SMITH_LOG_TRACE_INTERNAL]

# defaults for the stack configuration
DEFAULT_STAGE = "dev"
DEFAULT_REGION = "us-east-1"
DEFAULT_ACCOUNT_ID = "000000000000"

# directory (relative to the working directory) holding stack state files
DEFAULT_STATE_DIR = ".stacksmith"

# folder holding configuration profiles (<profile>.env)
CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".stacksmith")

# format version of synthesized plan documents
DOCUMENT_FORMAT_VERSION = "2024-06-01"

# format version of persisted stack state
STATE_FORMAT_VERSION = 1

# prefix of the system tags attached to every synthesized resource
SYSTEM_TAG_PREFIX = "stacksmith:"

# plux namespace for resource provider plugins
RESOURCE_PROVIDER_NAMESPACE = "stacksmith.resource_providers"
