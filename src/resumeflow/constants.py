"""
Centralized constants for resumeflow.

File names, format markers and engine defaults live here
to avoid duplication across modules.
"""

# Checkpoint container format marker (prefix before the first colon)
FORMAT_MARKER = "RFW1"

# Recognized markers; anything else fails closed
SUPPORTED_MARKERS = {FORMAT_MARKER}

# HMAC-SHA256 tag length in bytes
TAG_SIZE = 32

# State directory layout: <state_dir>/<workflow_id><suffix>
CHECKPOINT_SUFFIX = ".checkpoint"
LOCK_SUFFIX = ".lock"
CANCEL_SUFFIX = ".cancel"
SEQUENCE_SUFFIX = ".seq"
TEMP_SUFFIX = ".tmp"
INSTALLATION_KEY_FILE = "installation.key"

# Progress scale
PROGRESS_MAX = 100.0

# Engine defaults
DEFAULT_CANCEL_GRACE_SECONDS = 5.0
DEFAULT_OUTPUT_QUEUE_SIZE = 256
DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_CAPTURE_OUTPUT_LINES = 200

# Output levels
LEVEL_OUTPUT = "OUTPUT"
LEVEL_INFO = "INFO"
LEVEL_WARN = "WARN"
LEVEL_ERROR = "ERR"

# Directive prefix for external scripts writing to stdout
DIRECTIVE_PREFIX = "::rfw::"

# Environment variables handed to external scripts
ENV_WORKFLOW_ID = "RFW_WORKFLOW_ID"
ENV_TASK_NAME = "RFW_TASK_NAME"
ENV_TASK_INDEX = "RFW_TASK_INDEX"
ENV_TASK_COUNT = "RFW_TASK_COUNT"
ENV_DATA = "RFW_DATA"
ENV_PARAM_PREFIX = "RFW_PARAM_"
