"""Tessera migration constants.

Implementation details that do not change between installations. User
settings live in tessera.config and are read from the environment.
"""

# =============================================================================
# File formats
# =============================================================================

# SQLite header string, starts at byte 0
SQLITE_MAGIC = b"SQLite format 3\x00"
SQLITE_MAGIC_OFFSET = 0

# DuckDB main header: 8-byte checksum followed by "DUCK"
DUCKDB_MAGIC = b"DUCK"
DUCKDB_MAGIC_OFFSET = 8

SQLITE_EXTENSIONS = frozenset({".db", ".sqlite", ".sqlite3"})
DUCKDB_EXTENSIONS = frozenset({".duckdb", ".db"})
CANDIDATE_EXTENSIONS = SQLITE_EXTENSIONS | DUCKDB_EXTENSIONS

# =============================================================================
# Directory layout (relative to the data directory)
# =============================================================================

APP_DB_DIR_NAME = "app_db"
KNOWLEDGE_DIR_NAME = "knowledge"
BACKUP_DIR_NAME = "migration_backups"
RECOVERY_POINTS_DIR_NAME = "recovery_points"
REPORTS_DIR_NAME = "migration_reports"
UNIFIED_DIR_NAME = "unified_db"
UNIFIED_DB_FILE_NAME = "unified.db"

# Filenames in the data directory tracked by system state snapshots
TRACKED_CONFIG_FILES = ("config.json", "settings.json", ".env")

# =============================================================================
# Detection and estimates
# =============================================================================

LARGE_DATABASE_BYTES = 1000 * 1024 * 1024
DISK_SPACE_MULTIPLIER = 2.5
BASE_DURATION_SECONDS = 30.0
SECONDS_PER_RECORD = 0.001

# =============================================================================
# Backup
# =============================================================================

COPY_CHUNK_SIZE = 1024 * 1024  # 1MB
BACKUP_ID_BYTES = 6

# =============================================================================
# Error handling
# =============================================================================

MAX_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 2.0
# Free space required by the disk-space retry probe
MIN_FREE_SPACE_BYTES = 100 * 1024 * 1024

# =============================================================================
# Orchestrator progress checkpoints (percent)
# =============================================================================

PROGRESS_DETECTION = 5
PROGRESS_BACKUP = 15
PROGRESS_SCHEMA = 25
PROGRESS_DATA = 35
PROGRESS_VALIDATION = 85
PROGRESS_CLEANUP = 95
PROGRESS_COMPLETE = 100

# =============================================================================
# Unified schema and validation thresholds
# =============================================================================

UNIFIED_SCHEMA_VERSION = 1
REQUIRED_TABLES = (
    "conversations",
    "messages",
    "message_attachments",
    "knowledge_files",
    "knowledge_chunks",
    "knowledge_vectors",
    "schema_version",
    "migration_metadata",
)
REQUIRED_INDEXES = (
    "idx_messages_conversation",
    "idx_messages_parent",
    "idx_attachments_message",
    "idx_chunks_file",
    "idx_vectors_chunk",
)
LARGE_CONVERSATION_COUNT = 10_000
LARGE_MESSAGE_COUNT = 100_000
VECTOR_QUERY_SLOW_MS = 1000.0
