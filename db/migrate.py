from __future__ import annotations

import hashlib
import importlib.util
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path


MIGRATION_RE = re.compile(r"^(\d{4})_([a-zA-Z0-9_]+)\.(sql|py)$")


@dataclass(frozen=True)
class MigrationFile:
    version: str
    name: str
    ext: str
    path: Path

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.path.read_bytes()).hexdigest()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ensure_migration_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at_utc TEXT NOT NULL
        )
        """
    )
    conn.commit()


def discover_migrations(migrations_dir: str) -> list[MigrationFile]:
    base = Path(migrations_dir)
    if not base.exists():
        raise RuntimeError(f"Migrations directory not found: {migrations_dir}")
    found: list[MigrationFile] = []
    for p in sorted(base.iterdir()):
        if not p.is_file():
            continue
        m = MIGRATION_RE.match(p.name)
        if m:
            found.append(MigrationFile(version=m.group(1), name=m.group(2), ext=m.group(3), path=p))
    return found


def _run_py(conn: sqlite3.Connection, path: Path) -> None:
    spec = importlib.util.spec_from_file_location(f"role_reactor_migration_{path.stem}", str(path))
    if spec is None or spec.loader is None:
        raise RuntimeError(f"Could not load migration module: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    upgrade = getattr(module, "upgrade", None)
    if not callable(upgrade):
        raise RuntimeError(f"Python migration missing upgrade(conn): {path}")
    upgrade(conn)


def list_schema_migrations_sync(conn: sqlite3.Connection, limit: int = 50) -> list[tuple[str, str, str]]:
    try:
        cur = conn.execute(
            "SELECT version, name, applied_at_utc FROM schema_migrations ORDER BY version DESC LIMIT ?",
            (max(1, min(int(limit), 500)),),
        )
        return [(str(v), str(n), str(a)) for (v, n, a) in cur.fetchall()]
    except sqlite3.OperationalError:
        return []


def apply_sqlite_migrations(conn: sqlite3.Connection, migrations_dir: str) -> list[str]:
    """Apply pending migrations in version order and return the versions applied.

    An already-applied version whose file name or checksum changed is refused,
    since the schema on disk would no longer match what the code expects.
    """
    _ensure_migration_table(conn)
    applied = {
        str(version): (str(name), str(checksum))
        for version, name, checksum in conn.execute("SELECT version, name, checksum FROM schema_migrations").fetchall()
    }

    newly_applied: list[str] = []
    for mig in discover_migrations(migrations_dir):
        checksum = mig.checksum
        existing = applied.get(mig.version)
        if existing:
            old_name, old_checksum = existing
            if old_name != mig.name or old_checksum != checksum:
                raise RuntimeError(
                    f"Migration version {mig.version} already applied with different content "
                    f"(existing name={old_name}, file name={mig.name})."
                )
            continue

        print(f"[DB] Applying migration {mig.version}_{mig.name}.{mig.ext}")
        if mig.ext == "sql":
            conn.executescript(mig.path.read_text(encoding="utf-8"))
        else:
            _run_py(conn, mig.path)

        conn.execute(
            "INSERT INTO schema_migrations (version, name, checksum, applied_at_utc) VALUES (?, ?, ?, ?)",
            (mig.version, mig.name, checksum, _utc_now_iso()),
        )
        conn.commit()
        newly_applied.append(mig.version)
    return newly_applied
