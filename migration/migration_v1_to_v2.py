"""
Migration V1 -> V2
- Adds 'status' to orders if missing (existing orders become 'active')
- Adds 'last_updated' to orders if missing, backfilled from created_at
- Creates the user_stage_permissions table if missing

Usage:
  python -m migration.migration_v1_to_v2 --db path/to/workshop.db
"""
import argparse
import logging
import os
import sqlite3
from contextlib import closing

logger = logging.getLogger(__name__)

PERMISSIONS_DDL = """
CREATE TABLE user_stage_permissions (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    stage_id INTEGER NOT NULL REFERENCES stages(id) ON DELETE CASCADE,
    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    CONSTRAINT uq_user_stage UNIQUE (user_id, stage_id)
)
"""


def has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cur = conn.execute(f"PRAGMA table_info({table})")
    return any(row[1] == column for row in cur.fetchall())


def migrate(db_path: str) -> list:
    """Upgrade ``db_path`` in place; returns the steps that were applied."""
    if db_path == ":memory:":
        raise ValueError("Use a file-backed DB for migration script")

    if not os.path.exists(db_path):
        raise FileNotFoundError(db_path)

    applied = []
    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute("PRAGMA foreign_keys=ON")

        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        missing = {"users", "stages", "orders"} - tables
        if missing:
            raise RuntimeError(f"{', '.join(sorted(missing))} table missing; cannot migrate")

        if not has_column(conn, "orders", "status"):
            conn.execute("ALTER TABLE orders ADD COLUMN status VARCHAR(9) NOT NULL DEFAULT 'active'")
            applied.append("orders.status")

        if not has_column(conn, "orders", "last_updated"):
            conn.execute("ALTER TABLE orders ADD COLUMN last_updated DATETIME")
            applied.append("orders.last_updated")
        # Backfill where NULL
        if has_column(conn, "orders", "created_at"):
            conn.execute("UPDATE orders SET last_updated = COALESCE(created_at, CURRENT_TIMESTAMP) WHERE last_updated IS NULL")
        else:
            conn.execute("UPDATE orders SET last_updated = CURRENT_TIMESTAMP WHERE last_updated IS NULL")

        if "user_stage_permissions" not in tables:
            conn.execute(PERMISSIONS_DDL)
            conn.execute("CREATE INDEX ix_user_stage_permissions_user_id ON user_stage_permissions (user_id)")
            conn.execute("CREATE INDEX ix_user_stage_permissions_stage_id ON user_stage_permissions (stage_id)")
            applied.append("user_stage_permissions")

        conn.commit()

    for step in applied:
        logger.info("migrated %s: %s", db_path, step)
    return applied


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", required=True, help="Path to SQLite database file")
    args = parser.parse_args()
    migrate(args.db)

if __name__ == "__main__":
    main()
