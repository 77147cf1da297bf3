"""
Protocol constants shared across notesync.
"""

# Retry with exponential backoff: 1s, 2s, 4s ... capped at 10s
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_RETRY_MAX_DELAY = 10.0
DEFAULT_RETRY_MULTIPLIER = 2.0

# Remote snapshots kept after an upload; older ones are pruned
DEFAULT_RETENTION_COUNT = 20

DEFAULT_SYNC_INTERVAL_MINUTES = 30
DEFAULT_DEBOUNCE_SECONDS = 3.0

SNAPSHOT_FILE_PREFIX = "notesync_snapshot_"
SNAPSHOT_EXTENSION = "zip"
ENCRYPTED_EXTENSION = "enc"
DEFAULT_FOLDER_NAME = "NoteSyncBackup"

# Reserved keys in the local state store, kept apart from record tables
SYNC_METADATA_KEY = "__notesync_sync_metadata__"
PENDING_QUEUE_KEY = "__notesync_pending_queue__"
SYNC_SETTINGS_KEY = "__notesync_sync_settings__"

DEFAULT_DB_PATH = "data/notesync.db"
DEFAULT_TOKEN_DIR = "data/.tokens"
