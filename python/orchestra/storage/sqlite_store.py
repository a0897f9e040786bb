"""SQLite-backed task store."""

import asyncio
import functools
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from orchestra.exceptions import NotFoundError
from orchestra.models import (
    Agent,
    AgentRole,
    Execution,
    ExecutionStatus,
    Orchestration,
    OrchestrationStatus,
    Task,
    TaskPriority,
    TaskStatus,
)
from orchestra.storage.memory_store import READ_ONLY_FIELDS

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TASK_COLUMNS = (
    "id", "title", "description", "status", "priority", "agent_id",
    "orchestration_id", "parent_id", "estimated_hours", "created_at", "completed_at",
)
_AGENT_COLUMNS = ("id", "name", "role", "is_active")
_ORCHESTRATION_COLUMNS = (
    "id", "parent_task_id", "status", "current_phase", "total_subtasks",
    "completed_subtasks", "plan", "created_at", "completed_at",
)
_EXECUTION_COLUMNS = (
    "id", "task_id", "agent_id", "status", "progress", "error", "result",
    "created_at", "started_at", "completed_at",
)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, dict):
        return json.dumps(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _in_clause(column: str, values: Sequence[Any]) -> Tuple[str, List[Any]]:
    if not values:
        return "0", []
    return f"{column} IN ({', '.join('?' for _ in values)})", [_encode(v) for v in values]


class SQLiteTaskStore:
    """``ITaskStore`` persisted to a SQLite file.

    Opens one connection per call, on the default executor so SQLite I/O
    never blocks the event loop. Dependency edges live in their own table
    and are folded into ``Task.depends_on`` / ``Task.dependents`` on read.
    """

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = str(Path.home() / ".orchestra" / "orchestra.db")

        self.db_path = db_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_database()
        logger.info("SQLite task store at %s", self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_database(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    agent_id TEXT,
                    orchestration_id TEXT,
                    parent_id TEXT,
                    estimated_hours REAL,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_dependencies (
                    task_id TEXT NOT NULL,
                    depends_on_id TEXT NOT NULL,
                    PRIMARY KEY (task_id, depends_on_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agents (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    role TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS orchestrations (
                    id TEXT PRIMARY KEY,
                    parent_task_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_phase TEXT NOT NULL DEFAULT '',
                    total_subtasks INTEGER NOT NULL DEFAULT 0,
                    completed_subtasks INTEGER NOT NULL DEFAULT 0,
                    plan TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    progress INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    result TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_orchestration ON tasks (orchestration_id, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_executions_task ON executions (task_id, status)")

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run blocking SQLite work on the default executor."""
        return await asyncio.get_running_loop().run_in_executor(None, functools.partial(fn, *args, **kwargs))

    # ── Generic helpers ──────────────────────────────────────────────

    @staticmethod
    def _insert(conn: sqlite3.Connection, table: str, columns: Sequence[str], record: Any) -> None:
        values = [_encode(getattr(record, c)) for c in columns]
        conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            values,
        )

    @staticmethod
    def _update(
        conn: sqlite3.Connection,
        table: str,
        columns: Sequence[str],
        entity: str,
        record_id: str,
        changes: Dict[str, Any],
    ) -> None:
        bad = sorted(k for k in changes if k not in columns or k in READ_ONLY_FIELDS)
        if bad:
            raise ValueError(f"Cannot update fields {bad}")
        if not changes:
            found = conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (record_id,)).fetchone()
        else:
            assignments = ", ".join(f"{k} = ?" for k in changes)
            cur = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                [_encode(v) for v in changes.values()] + [record_id],
            )
            found = cur.rowcount > 0
        if not found:
            raise NotFoundError(entity, record_id)

    # ── Tasks ────────────────────────────────────────────────────────

    def _task_from_rows(self, conn: sqlite3.Connection, rows: List[sqlite3.Row]) -> List[Task]:
        if not rows:
            return []
        ids = [r["id"] for r in rows]
        deps: Dict[str, set] = {i: set() for i in ids}
        dependents: Dict[str, set] = {i: set() for i in ids}
        clause, params = _in_clause("task_id", ids)
        rclause, rparams = _in_clause("depends_on_id", ids)
        for edge in conn.execute(
            f"SELECT task_id, depends_on_id FROM task_dependencies WHERE {clause} OR {rclause}",
            params + rparams,
        ):
            if edge["task_id"] in deps:
                deps[edge["task_id"]].add(edge["depends_on_id"])
            if edge["depends_on_id"] in dependents:
                dependents[edge["depends_on_id"]].add(edge["task_id"])
        return [
            Task(
                id=r["id"],
                title=r["title"],
                description=r["description"],
                status=TaskStatus(r["status"]),
                priority=TaskPriority(r["priority"]),
                depends_on=deps[r["id"]],
                dependents=dependents[r["id"]],
                agent_id=r["agent_id"],
                orchestration_id=r["orchestration_id"],
                parent_id=r["parent_id"],
                estimated_hours=r["estimated_hours"],
                created_at=_dt(r["created_at"]),
                completed_at=_dt(r["completed_at"]),
            )
            for r in rows
        ]

    def _fetch_task(self, conn: sqlite3.Connection, task_id: str) -> Optional[Task]:
        rows = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchall()
        tasks = self._task_from_rows(conn, rows)
        return tasks[0] if tasks else None

    @staticmethod
    def _link(conn: sqlite3.Connection, task_id: str, depends_on_id: str) -> None:
        for tid in (task_id, depends_on_id):
            if conn.execute("SELECT 1 FROM tasks WHERE id = ?", (tid,)).fetchone() is None:
                raise NotFoundError("Task", tid)
        conn.execute(
            "INSERT OR IGNORE INTO task_dependencies (task_id, depends_on_id) VALUES (?, ?)",
            (task_id, depends_on_id),
        )

    def _create_task(self, task: Task) -> Optional[Task]:
        # Row and edges commit together or not at all
        with self._connect() as conn:
            self._insert(conn, "tasks", _TASK_COLUMNS, task)
            for dep in task.depends_on:
                self._link(conn, task.id, dep)
            return self._fetch_task(conn, task.id)

    def _get_task(self, task_id: str) -> Optional[Task]:
        with self._connect() as conn:
            return self._fetch_task(conn, task_id)

    def _update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[Task]:
        with self._connect() as conn:
            self._update(conn, "tasks", _TASK_COLUMNS, "Task", task_id, changes)
            return self._fetch_task(conn, task_id)

    def _list_tasks(
        self,
        orchestration_id: Optional[str],
        statuses: Optional[List[TaskStatus]],
        ids: Optional[List[str]],
    ) -> List[Task]:
        where, params = ["1"], []
        if orchestration_id is not None:
            where.append("orchestration_id = ?")
            params.append(orchestration_id)
        if statuses is not None:
            clause, values = _in_clause("status", statuses)
            where.append(clause)
            params.extend(values)
        if ids is not None:
            clause, values = _in_clause("id", ids)
            where.append(clause)
            params.extend(values)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM tasks WHERE {' AND '.join(where)} ORDER BY created_at, rowid",
                params,
            ).fetchall()
            return self._task_from_rows(conn, rows)

    def _add_dependency(self, task_id: str, depends_on_id: str) -> None:
        with self._connect() as conn:
            self._link(conn, task_id, depends_on_id)

    async def create_task(self, task: Task) -> Task:
        return await self._call(self._create_task, task)

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await self._call(self._get_task, task_id)

    async def update_task(self, task_id: str, **changes: Any) -> Task:
        return await self._call(self._update_task, task_id, changes)

    async def list_tasks(
        self,
        orchestration_id: Optional[str] = None,
        statuses: Optional[Iterable[TaskStatus]] = None,
        ids: Optional[Iterable[str]] = None,
    ) -> List[Task]:
        return await self._call(
            self._list_tasks,
            orchestration_id,
            list(statuses) if statuses is not None else None,
            list(ids) if ids is not None else None,
        )

    async def add_dependency(self, task_id: str, depends_on_id: str) -> None:
        await self._call(self._add_dependency, task_id, depends_on_id)
        logger.debug("Dependency added: %s -> %s", task_id, depends_on_id)

    # ── Agents ───────────────────────────────────────────────────────

    @staticmethod
    def _agent(row: sqlite3.Row) -> Agent:
        return Agent(id=row["id"], name=row["name"], role=AgentRole(row["role"]), is_active=bool(row["is_active"]))

    def _fetch_agent(self, conn: sqlite3.Connection, agent_id: str) -> Optional[Agent]:
        row = conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return self._agent(row) if row else None

    def _create_agent(self, agent: Agent) -> Optional[Agent]:
        with self._connect() as conn:
            self._insert(conn, "agents", _AGENT_COLUMNS, agent)
            return self._fetch_agent(conn, agent.id)

    def _get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._connect() as conn:
            return self._fetch_agent(conn, agent_id)

    def _update_agent(self, agent_id: str, changes: Dict[str, Any]) -> Optional[Agent]:
        with self._connect() as conn:
            self._update(conn, "agents", _AGENT_COLUMNS, "Agent", agent_id, changes)
            return self._fetch_agent(conn, agent_id)

    def _list_agents(self, role: Optional[AgentRole], active_only: bool) -> List[Agent]:
        query, params = "SELECT * FROM agents WHERE 1", []
        if role is not None:
            query += " AND role = ?"
            params.append(_encode(role))
        if active_only:
            query += " AND is_active = 1"
        with self._connect() as conn:
            return [self._agent(r) for r in conn.execute(query + " ORDER BY rowid", params)]

    async def create_agent(self, agent: Agent) -> Agent:
        return await self._call(self._create_agent, agent)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return await self._call(self._get_agent, agent_id)

    async def update_agent(self, agent_id: str, **changes: Any) -> Agent:
        return await self._call(self._update_agent, agent_id, changes)

    async def list_agents(self, role: Optional[AgentRole] = None, active_only: bool = False) -> List[Agent]:
        return await self._call(self._list_agents, role, active_only)

    # ── Orchestrations ───────────────────────────────────────────────

    @staticmethod
    def _orchestration(row: sqlite3.Row) -> Orchestration:
        return Orchestration(
            id=row["id"],
            parent_task_id=row["parent_task_id"],
            status=OrchestrationStatus(row["status"]),
            current_phase=row["current_phase"],
            total_subtasks=row["total_subtasks"],
            completed_subtasks=row["completed_subtasks"],
            plan=json.loads(row["plan"]) if row["plan"] else None,
            created_at=_dt(row["created_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    def _fetch_orchestration(self, conn: sqlite3.Connection, orchestration_id: str) -> Optional[Orchestration]:
        row = conn.execute("SELECT * FROM orchestrations WHERE id = ?", (orchestration_id,)).fetchone()
        return self._orchestration(row) if row else None

    def _create_orchestration(self, orchestration: Orchestration) -> Optional[Orchestration]:
        with self._connect() as conn:
            self._insert(conn, "orchestrations", _ORCHESTRATION_COLUMNS, orchestration)
            return self._fetch_orchestration(conn, orchestration.id)

    def _get_orchestration(self, orchestration_id: str) -> Optional[Orchestration]:
        with self._connect() as conn:
            return self._fetch_orchestration(conn, orchestration_id)

    def _get_orchestration_by_parent(self, parent_task_id: str) -> Optional[Orchestration]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM orchestrations WHERE parent_task_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (parent_task_id,),
            ).fetchone()
        return self._orchestration(row) if row else None

    def _update_orchestration(self, orchestration_id: str, changes: Dict[str, Any]) -> Optional[Orchestration]:
        with self._connect() as conn:
            self._update(conn, "orchestrations", _ORCHESTRATION_COLUMNS, "Orchestration", orchestration_id, changes)
            return self._fetch_orchestration(conn, orchestration_id)

    async def create_orchestration(self, orchestration: Orchestration) -> Orchestration:
        return await self._call(self._create_orchestration, orchestration)

    async def get_orchestration(self, orchestration_id: str) -> Optional[Orchestration]:
        return await self._call(self._get_orchestration, orchestration_id)

    async def get_orchestration_by_parent(self, parent_task_id: str) -> Optional[Orchestration]:
        return await self._call(self._get_orchestration_by_parent, parent_task_id)

    async def update_orchestration(self, orchestration_id: str, **changes: Any) -> Orchestration:
        return await self._call(self._update_orchestration, orchestration_id, changes)

    # ── Executions ───────────────────────────────────────────────────

    @staticmethod
    def _execution(row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            task_id=row["task_id"],
            agent_id=row["agent_id"],
            status=ExecutionStatus(row["status"]),
            progress=row["progress"],
            error=row["error"],
            result=row["result"],
            created_at=_dt(row["created_at"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    def _fetch_execution(self, conn: sqlite3.Connection, execution_id: str) -> Optional[Execution]:
        row = conn.execute("SELECT * FROM executions WHERE id = ?", (execution_id,)).fetchone()
        return self._execution(row) if row else None

    def _create_execution(self, execution: Execution) -> Optional[Execution]:
        with self._connect() as conn:
            self._insert(conn, "executions", _EXECUTION_COLUMNS, execution)
            return self._fetch_execution(conn, execution.id)

    def _get_execution(self, execution_id: str) -> Optional[Execution]:
        with self._connect() as conn:
            return self._fetch_execution(conn, execution_id)

    def _update_execution(self, execution_id: str, changes: Dict[str, Any]) -> Optional[Execution]:
        with self._connect() as conn:
            self._update(conn, "executions", _EXECUTION_COLUMNS, "Execution", execution_id, changes)
            return self._fetch_execution(conn, execution_id)

    def _delete_execution(self, execution_id: str) -> None:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM executions WHERE id = ?", (execution_id,))
            if cur.rowcount == 0:
                raise NotFoundError("Execution", execution_id)

    @staticmethod
    def _execution_query(
        select: str,
        orchestration_id: Optional[str],
        statuses: Optional[List[ExecutionStatus]],
        ids: Optional[List[str]] = None,
        task_id: Optional[str] = None,
    ) -> Tuple[str, List[Any]]:
        query = f"SELECT {select} FROM executions e"
        where, params = ["1"], []
        if orchestration_id is not None:
            query += " JOIN tasks t ON t.id = e.task_id"
            where.append("t.orchestration_id = ?")
            params.append(orchestration_id)
        if statuses is not None:
            clause, values = _in_clause("e.status", statuses)
            where.append(clause)
            params.extend(values)
        if ids is not None:
            clause, values = _in_clause("e.id", ids)
            where.append(clause)
            params.extend(values)
        if task_id is not None:
            where.append("e.task_id = ?")
            params.append(task_id)
        return f"{query} WHERE {' AND '.join(where)}", params

    def _list_executions(
        self,
        orchestration_id: Optional[str],
        statuses: Optional[List[ExecutionStatus]],
        ids: Optional[List[str]],
        task_id: Optional[str],
    ) -> List[Execution]:
        query, params = self._execution_query("e.*", orchestration_id, statuses, ids, task_id)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY e.created_at, e.rowid", params).fetchall()
        return [self._execution(r) for r in rows]

    def _count_executions(self, orchestration_id: str, statuses: Optional[List[ExecutionStatus]]) -> int:
        query, params = self._execution_query("COUNT(*)", orchestration_id, statuses)
        with self._connect() as conn:
            return conn.execute(query, params).fetchone()[0]

    async def create_execution(self, execution: Execution) -> Execution:
        return await self._call(self._create_execution, execution)

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        return await self._call(self._get_execution, execution_id)

    async def update_execution(self, execution_id: str, **changes: Any) -> Execution:
        return await self._call(self._update_execution, execution_id, changes)

    async def delete_execution(self, execution_id: str) -> None:
        await self._call(self._delete_execution, execution_id)

    async def list_executions(
        self,
        orchestration_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        ids: Optional[Iterable[str]] = None,
        task_id: Optional[str] = None,
    ) -> List[Execution]:
        return await self._call(
            self._list_executions,
            orchestration_id,
            list(statuses) if statuses is not None else None,
            list(ids) if ids is not None else None,
            task_id,
        )

    async def count_executions(
        self,
        orchestration_id: str,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
    ) -> int:
        return await self._call(
            self._count_executions, orchestration_id, list(statuses) if statuses is not None else None
        )
