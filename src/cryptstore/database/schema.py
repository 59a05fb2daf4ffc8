"""SQLite schema definitions for the bucket store."""

# SQL schema definitions
SCHEMA_VERSION = 1

CREATE_TABLES = [
    # Buckets table - one row per named partition
    """
    CREATE TABLE IF NOT EXISTS buckets (
        name TEXT PRIMARY KEY,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # Records table - BLOB keys compare with memcmp, so ORDER BY key is byte order
    """
    CREATE TABLE IF NOT EXISTS records (
        bucket TEXT NOT NULL,
        key BLOB NOT NULL,
        value BLOB NOT NULL,
        PRIMARY KEY (bucket, key),
        FOREIGN KEY (bucket) REFERENCES buckets(name) ON DELETE CASCADE
    ) WITHOUT ROWID
    """,
    # Schema version tracking
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


def get_init_schema():
    """
    Get complete schema initialization SQL

    Returns:
        List of SQL statements to execute
    """
    statements = []
    statements.extend(CREATE_TABLES)
    statements.append(
        f"INSERT OR IGNORE INTO schema_version (version) VALUES ({SCHEMA_VERSION})"
    )
    return statements


def get_drop_schema():
    """
    Get SQL statements to drop all tables for testing

    Returns:
        List of DROP TABLE statements
    """
    return [
        "DROP TABLE IF EXISTS records",
        "DROP TABLE IF EXISTS buckets",
        "DROP TABLE IF EXISTS schema_version",
    ]
