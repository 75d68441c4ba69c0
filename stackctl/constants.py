from __future__ import annotations

WORK_DIR_NAME = ".stackctl"
CONFIG_NAME = "stackctl.config.json"
STAGE_MARKER_NAME = "stage"
LOG_FILE_NAME = "stackctl.log"
SERVER_FILE_NAME = "server.json"

# Commands that mutate deployed state and therefore require the stage lock.
MUTATING_COMMANDS = frozenset({"up", "destroy", "refresh"})

RESOURCE_ENV_PREFIX = "STACKCTL_RESOURCE_"
