"""SQLite repository for deploy records, commands and history."""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Iterator

from iis_deploy.config import settings
from iis_deploy.core.exceptions import DeployNotFoundError
from iis_deploy.models.deploy import (
    DEPLOY_TRANSITIONS,
    Command,
    CommandStatus,
    Deploy,
    DeployStatus,
    HistoryEntry,
)
from iis_deploy.utils.logging import get_logger

logger = get_logger("deploy_repository")

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _resolve_db_path(db_path: str | Path) -> Path:
    """Resolve database path relative to project root when not absolute."""
    path = Path(db_path)
    return path if path.is_absolute() else PROJECT_ROOT / path


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class DeployRepository:
    """Repository for deploy aggregates in SQLite.

    Every public write is its own short transaction: status changes are
    committed as they happen so observers can follow a deploy while its
    commands are still running.
    """

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = _resolve_db_path(db_path or settings.database_path)
        self._ensure_db_exists()

    def _ensure_db_exists(self) -> None:
        """Create database and tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS deploys (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_url TEXT NOT NULL,
                    branch TEXT NOT NULL,
                    build_output TEXT NOT NULL,
                    site_name TEXT NOT NULL,
                    application_name TEXT,
                    user_id INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    message TEXT,
                    platform TEXT,
                    target_path TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS deploy_commands (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    deploy_id INTEGER NOT NULL REFERENCES deploys(id) ON DELETE CASCADE,
                    text TEXT NOT NULL,
                    command_order INTEGER NOT NULL,
                    terminal_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    message TEXT,
                    executed_at TEXT,
                    timeout_seconds REAL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS deploy_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    deploy_id INTEGER NOT NULL REFERENCES deploys(id) ON DELETE CASCADE,
                    status TEXT NOT NULL,
                    message TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_deploys_site
                ON deploys(site_name)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_commands_deploy
                ON deploy_commands(deploy_id, terminal_id, command_order)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_history_deploy
                ON deploy_history(deploy_id, id)
            """)
            conn.commit()

        logger.debug("deploy_repository.initialized", db_path=str(self.db_path))

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection with row factory.

        Uncommitted work is rolled back when the connection closes.
        """
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    def _row_to_deploy(self, row: sqlite3.Row) -> Deploy:
        return Deploy(
            id=row["id"],
            repo_url=row["repo_url"],
            branch=row["branch"],
            build_output=row["build_output"],
            site_name=row["site_name"],
            application_name=row["application_name"],
            user_id=row["user_id"],
            status=DeployStatus(row["status"]),
            message=row["message"],
            platform=row["platform"],
            target_path=row["target_path"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_command(self, row: sqlite3.Row) -> Command:
        return Command(
            id=row["id"],
            deploy_id=row["deploy_id"],
            text=row["text"],
            order=row["command_order"],
            terminal_id=row["terminal_id"],
            status=CommandStatus(row["status"]),
            message=row["message"],
            executed_at=_parse_dt(row["executed_at"]),
            timeout_seconds=row["timeout_seconds"],
        )

    def _row_to_history(self, row: sqlite3.Row) -> HistoryEntry:
        return HistoryEntry(
            id=row["id"],
            deploy_id=row["deploy_id"],
            status=DeployStatus(row["status"]),
            message=row["message"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _insert_history(
        self,
        conn: sqlite3.Connection,
        deploy_id: int,
        status: DeployStatus,
        message: str | None,
        created_at: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO deploy_history (deploy_id, status, message, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (deploy_id, status.value, message, created_at.isoformat()),
        )

    async def create_deploy(self, deploy: Deploy, commands: list[Command]) -> Deploy:
        """Insert a deploy, its pending commands and the initial history entry.

        All rows are written in a single transaction.
        """
        now = datetime.utcnow()
        deploy.status = DeployStatus.STARTED
        deploy.created_at = now
        deploy.updated_at = now
        if not deploy.message:
            deploy.message = "Deploy started"

        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO deploys
                (repo_url, branch, build_output, site_name, application_name,
                 user_id, status, message, platform, target_path,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    deploy.repo_url,
                    deploy.branch,
                    deploy.build_output,
                    deploy.site_name,
                    deploy.application_name,
                    deploy.user_id,
                    deploy.status.value,
                    deploy.message,
                    deploy.platform,
                    deploy.target_path,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            deploy.id = cursor.lastrowid

            for command in commands:
                command.deploy_id = deploy.id
                command.status = CommandStatus.PENDING
                cursor = conn.execute(
                    """
                    INSERT INTO deploy_commands
                    (deploy_id, text, command_order, terminal_id, status, message, executed_at, timeout_seconds)
                    VALUES (?, ?, ?, ?, ?, ?, NULL, ?)
                    """,
                    (
                        deploy.id,
                        command.text,
                        command.order,
                        command.terminal_id,
                        command.status.value,
                        command.message,
                        command.timeout_seconds,
                    ),
                )
                command.id = cursor.lastrowid

            self._insert_history(conn, deploy.id, deploy.status, deploy.message, now)
            conn.commit()

        deploy.commands = list(commands)
        deploy.history = [
            HistoryEntry(
                deploy_id=deploy.id,
                status=deploy.status,
                message=deploy.message,
                created_at=now,
            )
        ]

        logger.info(
            "deploy_repository.created",
            deploy_id=deploy.id,
            site_name=deploy.site_name,
            command_count=len(commands),
        )
        return deploy

    async def get_deploy(self, deploy_id: int) -> Deploy | None:
        """Get a deploy by ID without children."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM deploys WHERE id = ?",
                (deploy_id,),
            ).fetchone()

        return self._row_to_deploy(row) if row else None

    async def get_deploy_complete(self, deploy_id: int) -> Deploy | None:
        """Get a deploy with its commands and history."""
        deploy = await self.get_deploy(deploy_id)
        if deploy is None:
            return None

        deploy.commands = await self.list_commands(deploy_id)
        deploy.history = await self.list_history(deploy_id)
        return deploy

    async def list_deploys(
        self,
        status: DeployStatus | None = None,
        site_name: str | None = None,
        user_id: int | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[Deploy], int]:
        """List deploys, newest first, with optional filtering."""
        clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if site_name:
            clauses.append("site_name = ? COLLATE NOCASE")
            params.append(site_name)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._get_connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM deploys {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM deploys {where} ORDER BY id DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()

        return [self._row_to_deploy(row) for row in rows], total

    async def recent_deploys(self, limit: int = 10) -> list[Deploy]:
        """Return the most recent deploys."""
        deploys, _ = await self.list_deploys(limit=limit)
        return deploys

    async def list_commands(self, deploy_id: int) -> list[Command]:
        """List a deploy's commands grouped by terminal, in execution order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM deploy_commands
                WHERE deploy_id = ?
                ORDER BY terminal_id, command_order, id
                """,
                (deploy_id,),
            ).fetchall()

        return [self._row_to_command(row) for row in rows]

    async def list_history(self, deploy_id: int) -> list[HistoryEntry]:
        """List a deploy's status history, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM deploy_history WHERE deploy_id = ? ORDER BY id",
                (deploy_id,),
            ).fetchall()

        return [self._row_to_history(row) for row in rows]

    async def update_command(self, command: Command) -> Command:
        """Persist a command's status, message and execution time."""
        if command.id is None:
            raise ValueError("Cannot update a command that was never persisted")

        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE deploy_commands
                SET status = ?, message = ?, executed_at = ?
                WHERE id = ?
                """,
                (
                    command.status.value,
                    command.message,
                    command.executed_at.isoformat() if command.executed_at else None,
                    command.id,
                ),
            )
            conn.commit()

        logger.debug(
            "deploy_repository.command_updated",
            deploy_id=command.deploy_id,
            command_id=command.id,
            status=command.status.value,
        )
        return command

    async def record_status(
        self,
        deploy_id: int,
        status: DeployStatus,
        message: str | None = None,
    ) -> HistoryEntry:
        """Move a deploy to a new status and append the matching history entry.

        Raises:
            DeployNotFoundError: If the deploy does not exist
            ValueError: If the transition is not allowed
        """
        now = datetime.utcnow()

        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT status FROM deploys WHERE id = ?",
                (deploy_id,),
            ).fetchone()
            if row is None:
                raise DeployNotFoundError(deploy_id)

            current = DeployStatus(row["status"])
            if status not in DEPLOY_TRANSITIONS[current]:
                raise ValueError(
                    f"Invalid deploy transition {current.value} -> {status.value}"
                )

            conn.execute(
                """
                UPDATE deploys
                SET status = ?, message = ?, updated_at = ?
                WHERE id = ?
                """,
                (status.value, message, now.isoformat(), deploy_id),
            )
            self._insert_history(conn, deploy_id, status, message, now)
            conn.commit()

        logger.info(
            "deploy_repository.status_recorded",
            deploy_id=deploy_id,
            status=status.value,
        )
        return HistoryEntry(
            deploy_id=deploy_id,
            status=status,
            message=message,
            created_at=now,
        )

    async def set_target_path(self, deploy_id: int, target_path: str) -> None:
        """Store the resolved deploy destination."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE deploys SET target_path = ?, updated_at = ? WHERE id = ?",
                (target_path, datetime.utcnow().isoformat(), deploy_id),
            )
            conn.commit()


@lru_cache(maxsize=1)
def get_deploy_repository() -> DeployRepository:
    """Get the singleton deploy repository."""
    return DeployRepository()
