"""Centralized constants for the launcher."""

# Release repositories
RELEASE_OWNER = "firstbatchxyz"
COMPUTE_REPO = "dkn-compute-node"
LAUNCHER_REPO = "dkn-compute-launcher"

# Install directory layout
COMPUTE_LATEST_FILENAME = "dkn-compute-node_latest"
VERSION_TRACKER_FILENAME = ".dkn-compute-version"
LAUNCHER_TMP_FILENAME = ".tmp-launcher"
TMP_DOWNLOAD_PREFIX = ".tmp-dkn-"

# Variables injected into the compute node's environment
COMPUTE_ENV_KEY = "DKN_COMPUTE_ENV"
EXEC_PLATFORM_KEY = "DKN_EXEC_PLATFORM"

# Update checks (seconds)
COMPUTE_UPDATE_INTERVAL_SECONDS = 25 * 60
LAUNCHER_UPDATE_INTERVAL_SECONDS = 25 * 60

# HTTP
HTTP_TIMEOUT_SECONDS = 30
DOWNLOAD_TIMEOUT_SECONDS = 600
DOWNLOAD_CHUNK_SIZE = 64 * 1024
MAX_RELEASE_PAGES = 10

# Ollama companion
OLLAMA_DEFAULT_HOST = "http://127.0.0.1"
OLLAMA_DEFAULT_PORT = "11434"
OLLAMA_HOST_ENV_KEY = "OLLAMA_HOST"
OLLAMA_RETRY_COUNT = 10
OLLAMA_RETRY_INTERVAL_SECONDS = 0.5
OLLAMA_PROBE_TIMEOUT_SECONDS = 5

# Process shutdown
KILL_TIMEOUT_SECONDS = 10
