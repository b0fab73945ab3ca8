# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Use:
- .env (local, gitignored)
- config_local.py (local safe overrides, gitignored)

This file exists to make the repo self-documenting even without opening .env.
"""

ENV_VARS = {
    # App / logging
    "COSIGN_APP_NAME": "App display name (default: cosign).",
    "COSIGN_LOG_LEVEL": "Console logging level (default: INFO).",
    # Paths (gitignored)
    "COSIGN_DATA_DIR": "Local data directory, also holds cosign.log (default: .local/cosign).",
    "COSIGN_TASKS_DB_PATH": "TaskStore SQLite path (default: <data_dir>/tasks.sqlite3).",
    # Deadline scheduler
    "COSIGN_SCAN_INTERVAL_SECONDS": "Seconds between deadline scans (default: 60).",
    "COSIGN_SCAN_BATCH_LIMIT": "Max overdue tasks handled per scan (default: 500).",
    "COSIGN_SCAN_WORKERS": "Threads used to process one scan batch (default: 1).",
    "COSIGN_DRAIN_TIMEOUT_SECONDS": "How long shutdown waits for an in-flight scan (default: 10).",
    # Fan-out / registry
    "COSIGN_FANOUT_WORKERS": "Presence broadcast worker threads (default: 4).",
    "COSIGN_REGISTRY_STRIPES": "Lock stripes in the connection registry (default: 64).",
    # Connectors
    "COSIGN_CONSOLE_ENABLED": "Enable the operator console (true/false).",
    "COSIGN_WEBSOCKET_ENABLED": "Enable the websocket push server (true/false).",
    "COSIGN_WEBSOCKET_HOST": "Bind host (default: 127.0.0.1).",
    "COSIGN_WEBSOCKET_PORT": "Bind port (default: 8080).",
    "COSIGN_WEBSOCKET_QUEUE_SIZE": "Per-connection outbound queue size (default: 256).",
}
