import logging

import aiosqlite

from .pool import get_connection

logger = logging.getLogger("mediasort.db")


async def _ensure_columns(conn: aiosqlite.Connection, table: str, columns: list[tuple[str, str]]) -> None:
    cursor = await conn.execute(f"PRAGMA table_info({table})")
    rows = await cursor.fetchall()
    existing = {row["name"] for row in rows}
    for name, ddl in columns:
        if name not in existing:
            logger.info("Adding column %s.%s", table, name)
            await conn.execute(f"ALTER TABLE {table} ADD COLUMN {ddl}")


async def init_db() -> None:
    async with get_connection() as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS libraries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                media_type TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                priority INTEGER NOT NULL DEFAULT 0,
                description TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS library_mappings (
                library_id INTEGER PRIMARY KEY REFERENCES libraries(id) ON DELETE CASCADE,
                arr_type TEXT NOT NULL,
                base_url TEXT NOT NULL,
                api_key TEXT,
                root_folder_path TEXT NOT NULL,
                quality_profile_id INTEGER NOT NULL,
                monitored INTEGER NOT NULL DEFAULT 1,
                search_on_add INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS library_custom_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                library_id INTEGER NOT NULL REFERENCES libraries(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                rule_json TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 0,
                enabled INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS task_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_type TEXT NOT NULL,
                payload TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                priority INTEGER NOT NULL DEFAULT 0,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 5,
                next_retry_at TEXT NOT NULL,
                source TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                error_message TEXT,
                CHECK (attempts <= max_attempts)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS classification_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                external_id TEXT NOT NULL,
                media_type TEXT NOT NULL,
                title TEXT,
                metadata TEXT,
                library_id INTEGER REFERENCES libraries(id) ON DELETE SET NULL,
                confidence INTEGER NOT NULL DEFAULT 0,
                method TEXT NOT NULL,
                reason TEXT,
                status TEXT NOT NULL DEFAULT 'classified',
                created_at TEXT NOT NULL,
                updated_at TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS classification_corrections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                classification_id INTEGER NOT NULL REFERENCES classification_history(id) ON DELETE CASCADE,
                original_library_id INTEGER,
                corrected_library_id INTEGER NOT NULL,
                corrected_by TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS learning_patterns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern_type TEXT NOT NULL,
                pattern_key TEXT NOT NULL,
                pattern_value TEXT NOT NULL,
                library_id INTEGER NOT NULL REFERENCES libraries(id) ON DELETE CASCADE,
                confidence_score REAL NOT NULL,
                occurrence_count INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                last_seen TEXT NOT NULL,
                UNIQUE (pattern_type, pattern_key, library_id)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS clarification_questions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                question_key TEXT NOT NULL UNIQUE,
                question_text TEXT NOT NULL,
                response_options TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS clarification_responses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                classification_id INTEGER NOT NULL REFERENCES classification_history(id) ON DELETE CASCADE,
                question_id INTEGER NOT NULL REFERENCES clarification_questions(id),
                response_value TEXT NOT NULL,
                confidence_before INTEGER NOT NULL,
                confidence_after INTEGER NOT NULL,
                responded_by TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS reclassification_batches (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                status TEXT NOT NULL DEFAULT 'pending',
                total_items INTEGER NOT NULL DEFAULT 0,
                completed_items INTEGER NOT NULL DEFAULT 0,
                failed_items INTEGER NOT NULL DEFAULT 0,
                skipped_items INTEGER NOT NULL DEFAULT 0,
                paused_at_item INTEGER,
                pause_on_error INTEGER NOT NULL DEFAULT 1,
                created_by TEXT,
                error_message TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS reclassification_batch_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                batch_id INTEGER NOT NULL REFERENCES reclassification_batches(id) ON DELETE CASCADE,
                classification_id INTEGER NOT NULL,
                target_library_id INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                validation_result TEXT,
                execution_result TEXT,
                error_message TEXT,
                execution_order INTEGER NOT NULL,
                updated_at TEXT,
                UNIQUE (batch_id, execution_order)
            )
            """
        )
        await _ensure_columns(
            conn,
            "classification_history",
            [("status", "status TEXT NOT NULL DEFAULT 'classified'"), ("updated_at", "updated_at TEXT")],
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_task_queue_claim "
            "ON task_queue(status, priority DESC, created_at ASC)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_history_external "
            "ON classification_history(external_id, media_type)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_corrections_classification "
            "ON classification_corrections(classification_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_patterns_rank "
            "ON learning_patterns(confidence_score DESC, occurrence_count DESC)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_batch_items_order "
            "ON reclassification_batch_items(batch_id, execution_order)"
        )
        await conn.commit()
