"""
Session snapshot store.

Optional SQLite mirror of the in-memory session ledger, for inspecting
delegation chains after the fact (`subagent-orchestrator sessions`).
Snapshots are written, never read back into a live ledger.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class SessionSnapshot:
	"""A persisted view of one session."""
	session_id: str
	parent_id: str
	depth: int
	call_count: int
	is_sub_agent: bool
	updated_at: str
	state: dict[str, Any]


class SessionStore:
	"""SQLite-backed storage for session snapshots."""

	def __init__(self, db_path: str | Path):
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._ensure_table()

	def _ensure_table(self) -> None:
		"""Create the sessions table if it doesn't exist."""
		with sqlite3.connect(str(self.db_path)) as conn:
			conn.execute("""
				CREATE TABLE IF NOT EXISTS sessions (
					session_id TEXT PRIMARY KEY,
					parent_id TEXT DEFAULT '',
					depth INTEGER DEFAULT 0,
					call_count INTEGER DEFAULT 0,
					is_sub_agent INTEGER DEFAULT 0,
					updated_at TEXT NOT NULL,
					state_json TEXT NOT NULL
				)
			""")
			conn.execute("""
				CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at)
			""")

	def _connect(self) -> sqlite3.Connection:
		conn = sqlite3.connect(str(self.db_path))
		conn.row_factory = sqlite3.Row
		return conn

	def save(self, state: dict[str, Any]) -> None:
		"""Insert or replace the snapshot for state["session_id"]."""
		with self._connect() as conn:
			conn.execute(
				"""
				INSERT OR REPLACE INTO sessions
				(session_id, parent_id, depth, call_count, is_sub_agent, updated_at, state_json)
				VALUES (?, ?, ?, ?, ?, ?, ?)
				""",
				(
					state["session_id"],
					state.get("parent_id") or "",
					state.get("depth", 0),
					state.get("call_count", 0),
					1 if state.get("is_sub_agent") else 0,
					state.get("last_activity", ""),
					json.dumps(state),
				),
			)

	def get(self, session_id: str) -> Optional[SessionSnapshot]:
		with self._connect() as conn:
			row = conn.execute(
				"SELECT * FROM sessions WHERE session_id = ?",
				(session_id,),
			).fetchone()
		return self._to_snapshot(row) if row else None

	def list_recent(self, limit: int = 50) -> list[SessionSnapshot]:
		"""Most recently updated sessions first."""
		with self._connect() as conn:
			rows = conn.execute(
				"SELECT * FROM sessions ORDER BY updated_at DESC LIMIT ?",
				(limit,),
			).fetchall()
		return [self._to_snapshot(row) for row in rows]

	@staticmethod
	def _to_snapshot(row: sqlite3.Row) -> SessionSnapshot:
		return SessionSnapshot(
			session_id=row["session_id"],
			parent_id=row["parent_id"],
			depth=row["depth"],
			call_count=row["call_count"],
			is_sub_agent=bool(row["is_sub_agent"]),
			updated_at=row["updated_at"],
			state=json.loads(row["state_json"]),
		)
