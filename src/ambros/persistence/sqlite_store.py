import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from ambros.domain.chains import ChainSpec
from ambros.domain.commands import CommandRecord
from ambros.errors import RepositoryReadError, RepositoryWriteError


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqliteCommandStore:
    """Command history and saved chains in a single SQLite file."""

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path).expanduser().resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._init_schema()
        except sqlite3.Error as exc:
            raise RepositoryWriteError(f"failed to initialise database at {self._db_path}", exc)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS commands (
                    command_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    arguments TEXT NOT NULL,
                    status INTEGER NOT NULL,
                    output TEXT NOT NULL,
                    error TEXT NOT NULL,
                    category TEXT NOT NULL,
                    variables TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    terminated_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS command_tags (
                    command_id TEXT NOT NULL,
                    tag TEXT NOT NULL,
                    PRIMARY KEY (command_id, tag)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_command_tags_tag ON command_tags(tag)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chains (
                    name TEXT PRIMARY KEY,
                    definition TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def get(self, command_id: str) -> Optional[CommandRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM commands WHERE command_id = ?", (command_id,)).fetchone()
                if not row:
                    return None
                return _row_to_command(row, self._tags_for(conn, command_id))
        except sqlite3.Error as exc:
            raise RepositoryReadError(f"failed to read command {command_id}", exc)

    def get_all_commands(self) -> List[CommandRecord]:
        return self._select("SELECT * FROM commands ORDER BY created_at DESC", ())

    def get_limit_commands(self, limit: int) -> List[CommandRecord]:
        return self._select(
            "SELECT * FROM commands ORDER BY created_at DESC LIMIT ?",
            (max(0, int(limit)),),
        )

    def search_by_tag(self, tag: str) -> List[CommandRecord]:
        return self._select(
            """
            SELECT c.* FROM commands c
            JOIN command_tags t ON t.command_id = c.command_id
            WHERE t.tag = ?
            ORDER BY c.created_at DESC
            """,
            (tag,),
        )

    def put(self, record: CommandRecord) -> None:
        created = (record.created_at.isoformat() if record.created_at else _utc_now())
        terminated = record.terminated_at.isoformat() if record.terminated_at else None
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO commands (
                        command_id, name, arguments, status, output, error,
                        category, variables, created_at, terminated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(command_id) DO UPDATE SET
                        name = excluded.name,
                        arguments = excluded.arguments,
                        status = excluded.status,
                        output = excluded.output,
                        error = excluded.error,
                        category = excluded.category,
                        variables = excluded.variables,
                        terminated_at = excluded.terminated_at
                    """,
                    (
                        record.command_id,
                        record.name,
                        json.dumps(list(record.arguments), ensure_ascii=True),
                        1 if record.status else 0,
                        record.output or "",
                        record.error or "",
                        record.category or "",
                        json.dumps(dict(record.variables), ensure_ascii=True, sort_keys=True),
                        created,
                        terminated,
                    ),
                )
                conn.execute("DELETE FROM command_tags WHERE command_id = ?", (record.command_id,))
                conn.executemany(
                    "INSERT OR IGNORE INTO command_tags (command_id, tag) VALUES (?, ?)",
                    [(record.command_id, tag) for tag in record.tags if tag],
                )
        except sqlite3.Error as exc:
            raise RepositoryWriteError(f"failed to store command {record.command_id}", exc)

    def delete(self, command_id: str) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM command_tags WHERE command_id = ?", (command_id,))
                cur = conn.execute("DELETE FROM commands WHERE command_id = ?", (command_id,))
                return cur.rowcount > 0
        except sqlite3.Error as exc:
            raise RepositoryWriteError(f"failed to delete command {command_id}", exc)

    def save_chain(self, spec: ChainSpec) -> None:
        now = _utc_now()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO chains (name, definition, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        definition = excluded.definition,
                        updated_at = excluded.updated_at
                    """,
                    (spec.name, json.dumps(spec.to_dict(), ensure_ascii=True), now, now),
                )
        except sqlite3.Error as exc:
            raise RepositoryWriteError(f"failed to save chain {spec.name}", exc)

    def get_chain(self, name: str) -> Optional[ChainSpec]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT definition FROM chains WHERE name = ?", (name,)).fetchone()
        except sqlite3.Error as exc:
            raise RepositoryReadError(f"failed to read chain {name}", exc)
        if not row:
            return None
        return ChainSpec.from_dict(json.loads(row["definition"]))

    def list_chains(self) -> List[ChainSpec]:
        try:
            with self._connect() as conn:
                rows = conn.execute("SELECT definition FROM chains ORDER BY name ASC").fetchall()
        except sqlite3.Error as exc:
            raise RepositoryReadError("failed to list chains", exc)
        return [ChainSpec.from_dict(json.loads(r["definition"])) for r in rows]

    def delete_chain(self, name: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute("DELETE FROM chains WHERE name = ?", (name,))
                return cur.rowcount > 0
        except sqlite3.Error as exc:
            raise RepositoryWriteError(f"failed to delete chain {name}", exc)

    def _select(self, sql: str, params: tuple) -> List[CommandRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
                return [_row_to_command(r, self._tags_for(conn, r["command_id"])) for r in rows]
        except sqlite3.Error as exc:
            raise RepositoryReadError("failed to list commands", exc)

    def _tags_for(self, conn: sqlite3.Connection, command_id: str) -> List[str]:
        rows = conn.execute(
            "SELECT tag FROM command_tags WHERE command_id = ? ORDER BY rowid ASC",
            (command_id,),
        ).fetchall()
        return [r["tag"] for r in rows]


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _row_to_command(row: sqlite3.Row, tags: List[str]) -> CommandRecord:
    return CommandRecord(
        command_id=row["command_id"],
        name=row["name"],
        arguments=[str(a) for a in json.loads(row["arguments"] or "[]")],
        status=bool(row["status"]),
        output=row["output"],
        error=row["error"],
        tags=tags,
        category=row["category"],
        variables={str(k): str(v) for k, v in json.loads(row["variables"] or "{}").items()},
        created_at=_parse_ts(row["created_at"]),
        terminated_at=_parse_ts(row["terminated_at"]),
    )
