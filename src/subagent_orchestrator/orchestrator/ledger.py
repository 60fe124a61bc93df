"""
Session Ledger - Depth, quota, loop and refinement bookkeeping.

One session per delegation chain. The ledger is the only mutable state
shared between concurrent worker invocations, so every read-modify-write
happens under a single lock. Sessions are independent; the parent link
is only read when a child is created.

Mutations never touch the snapshot store directly: they queue the
latest snapshot per session, and flush_snapshots() writes the queue
outside the lock (the Orchestrator runs it in a worker thread).
"""

import copy
import hashlib
import logging
import threading
import time
import uuid
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from ..config import Config
from ..errors import (
	CallLimitExceeded,
	DelegationLoopDetected,
	DepthExceeded,
	OrchestratorError,
	ParallelQuotaExceeded,
	RefinementCapExceeded,
	SessionNotFound,
)
from .store import SessionStore

logger = logging.getLogger(__name__)


class Trend(str, Enum):
	"""Direction of quality scores across refinement attempts."""
	IMPROVING = "improving"
	STABLE = "stable"
	DEGRADING = "degrading"


def assess_trend(scores: list[float], min_delta: float) -> Trend:
	"""Compare the last two scores."""
	if len(scores) < 2:
		return Trend.STABLE
	delta = scores[-1] - scores[-2]
	if delta > min_delta:
		return Trend.IMPROVING
	if delta < -min_delta:
		return Trend.DEGRADING
	return Trend.STABLE


@dataclass
class RefinementState:
	"""Refinement attempts for one (session, role) pair."""
	role: str
	attempt_number: int = 0
	score_history: list[float] = field(default_factory=list)
	reasons: list[str] = field(default_factory=list)
	trend: Trend = Trend.STABLE
	exhausted: bool = False
	last_attempt_at: Optional[str] = None

	def to_dict(self) -> dict[str, Any]:
		data = asdict(self)
		data["trend"] = self.trend.value
		return data


@dataclass
class SessionState:
	"""Bookkeeping for one delegation chain."""
	id: str
	is_sub_agent: bool
	parent_id: Optional[str]
	depth: int
	created_at: float
	last_activity: float
	call_count: int = 0
	fingerprint_counts: dict[str, int] = field(default_factory=dict)
	role_call_counts: dict[str, int] = field(default_factory=dict)
	refinements: dict[str, RefinementState] = field(default_factory=dict)
	refinement_history: list[dict[str, Any]] = field(default_factory=list)
	loop_detected: bool = False
	loop_fingerprint: Optional[str] = None

	def to_dict(self) -> dict[str, Any]:
		return {
			"session_id": self.id,
			"is_sub_agent": self.is_sub_agent,
			"parent_id": self.parent_id,
			"depth": self.depth,
			"call_count": self.call_count,
			"role_call_counts": dict(self.role_call_counts),
			"refinements": {role: s.to_dict() for role, s in self.refinements.items()},
			"refinement_history": list(self.refinement_history),
			"loop_detected": self.loop_detected,
			"created_at": datetime.fromtimestamp(self.created_at).isoformat(),
			"last_activity": datetime.fromtimestamp(self.last_activity).isoformat(),
		}


class SessionLedger:
	"""
	In-memory session store with quota, loop and refinement tracking.

	Bounded: least recently used sessions are evicted past max_sessions,
	and sessions idle longer than session_ttl_minutes are dropped by
	cleanup_expired().
	"""

	def __init__(
		self,
		config: Config,
		store: Optional[SessionStore] = None,
		clock: Callable[[], float] = time.time,
	):
		self.config = config
		self.store = store
		self._clock = clock
		self._sessions: OrderedDict[str, SessionState] = OrderedDict()
		self._lock = threading.RLock()
		self._active_agents = 0
		self._sessions_created = 0
		self._sessions_evicted = 0
		self._pending_snapshots: dict[str, dict[str, Any]] = {}
		self._flush_lock = threading.Lock()

	# Sessions

	def create_session(self, is_sub_agent: bool = False, parent_id: Optional[str] = None) -> str:
		"""
		Allocate a session.

		Args:
			is_sub_agent: Whether the session belongs to a worker
			parent_id: Owning session; the new session is one level deeper

		Raises:
			SessionNotFound: If parent_id is unknown
			DepthExceeded: If the new depth would exceed max_depth
		"""
		with self._lock:
			depth = 0
			if parent_id is not None:
				parent = self._get(parent_id)
				depth = parent.depth + 1
				if depth > self.config.max_depth:
					raise DepthExceeded(
						f"Session depth {depth} would exceed the maximum of {self.config.max_depth}",
						session_id=parent_id,
						details={"current_depth": parent.depth, "max_depth": self.config.max_depth},
					)

			now = self._clock()
			session = SessionState(
				id=f"session-{uuid.uuid4().hex[:16]}",
				is_sub_agent=is_sub_agent,
				parent_id=parent_id,
				depth=depth,
				created_at=now,
				last_activity=now,
			)
			self._sessions[session.id] = session
			self._sessions_created += 1
			self._evict_overflow()
			self._persist(session)

		logger.info(f"Created session {session.id} (depth={depth}, parent={parent_id}, sub_agent={is_sub_agent})")
		return session.id

	def get_session(self, session_id: str) -> SessionState:
		"""Snapshot copy of a session; mutating it does not affect the ledger."""
		with self._lock:
			return copy.deepcopy(self._get(session_id, touch=False))

	def has_session(self, session_id: str) -> bool:
		with self._lock:
			return session_id in self._sessions

	# Spawn checks

	def spawn_block_reason(self, session_id: str) -> Optional[OrchestratorError]:
		"""The first exhausted limit for this session, or None if spawning is allowed."""
		with self._lock:
			session = self._get(session_id, touch=False)
			if session.loop_detected:
				return DelegationLoopDetected(
					"The same task was delegated repeatedly in this session",
					session_id=session_id,
					details={
						"fingerprint": session.loop_fingerprint,
						"repeats": session.fingerprint_counts.get(session.loop_fingerprint or "", 0),
						"repeat_threshold": self.config.loop_repeat_threshold,
					},
				)
			if session.depth >= self.config.max_depth:
				return DepthExceeded(
					f"Session is at depth {session.depth}; maximum is {self.config.max_depth}",
					session_id=session_id,
					details={"current_depth": session.depth, "max_depth": self.config.max_depth},
				)
			if session.call_count >= self.config.max_total_calls:
				return CallLimitExceeded(
					f"Session has used {session.call_count} of {self.config.max_total_calls} calls",
					session_id=session_id,
					details={"call_count": session.call_count, "max_total_calls": self.config.max_total_calls},
				)
			return None

	def can_spawn_agent(self, session_id: str) -> bool:
		return self.spawn_block_reason(session_id) is None

	def parallel_block_reason(self, n: int) -> Optional[ParallelQuotaExceeded]:
		with self._lock:
			limit = self.config.max_parallel_agents
			if n < 1 or n > limit:
				return ParallelQuotaExceeded(
					f"Batch size {n} is outside the allowed range 1-{limit}",
					details={"requested": n, "max_parallel_agents": limit},
				)
			capacity = self.config.max_concurrent_agents
			if self._active_agents + n > capacity:
				return ParallelQuotaExceeded(
					f"{self._active_agents} agents already running; {n} more would exceed capacity {capacity}",
					details={
						"requested": n,
						"active_agents": self._active_agents,
						"max_concurrent_agents": capacity,
					},
					remediation="Wait for running agents to finish or increase max_concurrent_agents.",
				)
			return None

	def can_spawn_parallel_agents(self, n: int) -> bool:
		return self.parallel_block_reason(n) is None

	@contextmanager
	def reserve_agents(self, n: int = 1, session_id: Optional[str] = None) -> Iterator[None]:
		"""Hold n units of global agent capacity for the duration of the block."""
		with self._lock:
			capacity = self.config.max_concurrent_agents
			if self._active_agents + n > capacity:
				raise ParallelQuotaExceeded(
					f"No capacity for {n} more agents ({self._active_agents}/{capacity} running)",
					session_id=session_id,
					details={
						"requested": n,
						"active_agents": self._active_agents,
						"max_concurrent_agents": capacity,
					},
					remediation="Wait for running agents to finish or increase max_concurrent_agents.",
				)
			self._active_agents += n
		try:
			yield
		finally:
			with self._lock:
				self._active_agents -= n

	# Call tracking

	@staticmethod
	def generate_task_hash(task: str, context: str, role: str) -> str:
		"""Deterministic fingerprint of (task, context, role)."""
		digest = hashlib.sha256()
		for part in (task, context, role):
			text = (part or "").strip()
			digest.update(f"{len(text)}:{text}|".encode("utf-8"))
		return digest.hexdigest()

	def track_agent_call(
		self,
		session_id: str,
		role: str,
		fingerprint: str,
		is_refinement: bool = False,
	) -> None:
		"""
		Count a delegation against the session.

		Refinement calls count toward the call quota but not toward loop
		detection, since they legitimately repeat a task.
		"""
		with self._lock:
			session = self._get(session_id)
			session.call_count += 1
			session.role_call_counts[role] = session.role_call_counts.get(role, 0) + 1
			if not is_refinement:
				count = session.fingerprint_counts.get(fingerprint, 0) + 1
				session.fingerprint_counts[fingerprint] = count
				if count > self.config.loop_repeat_threshold and not session.loop_detected:
					session.loop_detected = True
					session.loop_fingerprint = fingerprint
					logger.warning(
						f"Delegation loop detected in {session_id}: role={role} repeated {count} times"
					)
			self._persist(session)

	# Refinement

	def track_refinement_attempt(
		self,
		session_id: str,
		role: str,
		score: float,
		reason: str,
		max_attempts: Optional[int] = None,
	) -> RefinementState:
		"""
		Record a refinement attempt and recompute the trend.

		Raises:
			RefinementCapExceeded: If the (session, role) pair is already at its cap
		"""
		cap = max_attempts if max_attempts is not None else self.config.max_refinement_attempts
		with self._lock:
			session = self._get(session_id)
			state = session.refinements.setdefault(role, RefinementState(role=role))
			if state.exhausted or state.attempt_number >= cap:
				state.exhausted = True
				self._persist(session)
				raise RefinementCapExceeded(
					f"Refinement limit reached for {role}: {state.attempt_number}/{cap} attempts",
					session_id=session_id,
					details={"role": role, "attempt_number": state.attempt_number, "max_attempts": cap},
				)

			state.attempt_number += 1
			state.score_history.append(score)
			state.reasons.append(reason)
			state.trend = assess_trend(state.score_history, self.config.trend_min_delta)
			state.last_attempt_at = datetime.fromtimestamp(self._clock()).isoformat()
			session.refinement_history.append({
				"role": role,
				"attempt_number": state.attempt_number,
				"score": score,
				"trend": state.trend.value,
			})
			self._persist(session)

			logger.info(
				f"Refinement attempt {state.attempt_number}/{cap} for {role} in {session_id} "
				f"(score={score:.2f}, trend={state.trend.value})"
			)
			return copy.deepcopy(state)

	def get_refinement_state(self, session_id: str, role: str) -> Optional[RefinementState]:
		with self._lock:
			state = self._get(session_id, touch=False).refinements.get(role)
			return copy.deepcopy(state) if state else None

	# Stats

	def get_session_stats(self, session_id: str) -> dict[str, Any]:
		with self._lock:
			session = self._get(session_id, touch=False)
			return {
				"session_id": session.id,
				"is_sub_agent": session.is_sub_agent,
				"parent_id": session.parent_id,
				"depth": session.depth,
				"max_depth": self.config.max_depth,
				"total_calls": session.call_count,
				"max_calls": self.config.max_total_calls,
				"remaining_calls": max(0, self.config.max_total_calls - session.call_count),
				"agent_type_calls": dict(session.role_call_counts),
				"refinement_counts": {
					role: state.attempt_number for role, state in session.refinements.items()
				},
				"refinement_history": list(session.refinement_history),
				"loop_detected": session.loop_detected,
				"can_spawn": self.spawn_block_reason(session_id) is None,
				"created_at": datetime.fromtimestamp(session.created_at).isoformat(),
				"duration_minutes": round((self._clock() - session.created_at) / 60, 2),
			}

	def get_global_stats(self) -> dict[str, Any]:
		with self._lock:
			sessions = list(self._sessions.values())
			sub_agents = sum(1 for s in sessions if s.is_sub_agent)
			return {
				"active_sessions": len(sessions),
				"sub_agent_sessions": sub_agents,
				"primary_sessions": len(sessions) - sub_agents,
				"total_calls": sum(s.call_count for s in sessions),
				"active_agents": self._active_agents,
				"max_concurrent_agents": self.config.max_concurrent_agents,
				"sessions_created": self._sessions_created,
				"sessions_evicted": self._sessions_evicted,
			}

	# Housekeeping

	def cleanup_expired(self) -> int:
		"""Drop sessions idle longer than session_ttl_minutes. Returns count removed."""
		cutoff = self._clock() - self.config.session_ttl_minutes * 60
		with self._lock:
			expired = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
			for sid in expired:
				del self._sessions[sid]
			self._sessions_evicted += len(expired)
		if expired:
			logger.info(f"Expired {len(expired)} idle sessions")
		return len(expired)

	def _get(self, session_id: str, touch: bool = True) -> SessionState:
		session = self._sessions.get(session_id)
		if session is None:
			raise SessionNotFound(f"Unknown session: {session_id}", session_id=session_id)
		if touch:
			session.last_activity = self._clock()
			self._sessions.move_to_end(session_id)
		return session

	def _evict_overflow(self) -> None:
		while len(self._sessions) > self.config.max_sessions:
			evicted_id, _ = self._sessions.popitem(last=False)
			self._sessions_evicted += 1
			logger.debug(f"Evicted least recently used session {evicted_id}")

	def _persist(self, session: SessionState) -> None:
		if self.store is not None:
			self._pending_snapshots[session.id] = session.to_dict()

	def flush_snapshots(self) -> int:
		"""Write queued snapshots to the store. Returns the number written."""
		if self.store is None:
			return 0
		# Serialized so an older snapshot never overwrites a newer one
		with self._flush_lock:
			with self._lock:
				pending = list(self._pending_snapshots.values())
				self._pending_snapshots.clear()
			written = 0
			for state in pending:
				try:
					self.store.save(state)
					written += 1
				except Exception as e:
					logger.warning(f"Failed to persist session {state['session_id']}: {e}")
			return written
