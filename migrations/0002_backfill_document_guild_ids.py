from __future__ import annotations

import json
import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT collection, doc_key, payload_json
        FROM collection_documents
        WHERE guild_id IS NULL OR guild_id = ''
        """
    )
    updates: list[tuple[str, str, str]] = []
    for collection, doc_key, payload_json in cur.fetchall():
        try:
            payload = json.loads(payload_json or "{}")
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        guild_id = payload.get("guild_id")
        if guild_id is None or str(guild_id).strip() == "":
            continue
        updates.append((str(guild_id), collection, doc_key))

    if updates:
        cur.executemany(
            "UPDATE collection_documents SET guild_id = ? WHERE collection = ? AND doc_key = ?",
            updates,
        )
    conn.commit()
