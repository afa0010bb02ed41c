# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit real secrets (API keys, access tokens). Use .env (local, gitignored).

This file exists to make the repo self-documenting even without opening .env.example.
"""

ENV_VARS = {
    # App / logging
    "TASKSYNC_APP_NAME": "App display name (default: tasksync).",
    "TASKSYNC_LOG_LEVEL": "Console logging level (default: INFO). The file log is always DEBUG.",
    # Platform
    "TASKSYNC_PLATFORM": "native (SQLite + change queue) or web (no local persistence) (default: native).",
    "TASKSYNC_CONSOLE_ENABLED": "Run the interactive console (true/false, default: true).",
    # Paths (gitignored)
    "TASKSYNC_DATA_DIR": "Local data directory (default: .local/tasksync).",
    "TASKSYNC_LOCAL_DB_PATH": "SQLite path for records, queue and sync metadata (default: <data_dir>/tasksync.sqlite3).",
    # Remote backend
    "TASKSYNC_REMOTE_URL": "Supabase project URL. Empty => in-process offline demo backend.",
    "TASKSYNC_REMOTE_API_KEY": "Supabase anon key (required with TASKSYNC_REMOTE_URL).",
    "TASKSYNC_REMOTE_ACCESS_TOKEN": "Signed-in user's JWT (optional; falls back to the anon key).",
    "TASKSYNC_REQUEST_TIMEOUT_SECONDS": "Per-request HTTP timeout (default: 15).",
    # Session
    "TASKSYNC_OWNER_ID": "Owner (user) id stamped onto every record (default: local-user).",
    # Sync tuning
    "TASKSYNC_SYNC_INTERVAL_SECONDS": "Periodic sync interval (default: 60).",
    "TASKSYNC_BACKOFF_BASE_SECONDS": "First retry delay after a failed cycle (default: 2).",
    "TASKSYNC_BACKOFF_MAX_SECONDS": "Retry delay cap (default: 300).",
    "TASKSYNC_MAX_PUSH_ATTEMPTS": "Rejected pushes before a change is parked as failed (default: 5).",
    "TASKSYNC_CONNECTIVITY_POLL_SECONDS": "Connectivity probe interval (default: 10).",
}
