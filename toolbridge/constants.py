import os
from pathlib import Path

DEFAULT_CONFIG_PATH = Path.home() / ".toolbridge" / "servers.yaml"
CONFIG_VERSION = "1.0.0"

CONNECT_TIMEOUT_SECONDS = float(os.environ.get("TOOLBRIDGE_CONNECT_TIMEOUT", "10"))
VALIDATION_TIMEOUT_SECONDS = 3.0
CALL_TIMEOUT_SECONDS = float(os.environ.get("TOOLBRIDGE_CALL_TIMEOUT", "900"))
DISCOVERY_TIMEOUT_SECONDS = float(os.environ.get("TOOLBRIDGE_DISCOVERY_TIMEOUT", "60"))

# Launchers that fetch packages on demand; never probed with --help.
TRUSTED_LAUNCHERS = ("npx", "npm", "uvx")
INTERPRETER_ALIASES = ("python", "python3")

CLIENT_NAME = "toolbridge"
CLIENT_VERSION = "1.0.0"
