"""Turn orchestration: resolve session, rebuild history, call the model, normalise, persist.

Notes
-----
Turns within a session are not serialised. Two overlapping requests against the
same session can read the same history and both append, so stored order reflects
completion time. Callers that need strict ordering must serialise on their side.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict

from traxtutor.completion import CompletionInvoker
from traxtutor.errors import InvalidInput, TurnError, Unauthorized
from traxtutor.history import HistoryReconstructor, truncate_history
from traxtutor.normalizer import ResponseNormalizer, StructuredReply, recover_mode
from traxtutor.sessions import SessionLifecycleManager
from traxtutor.storage.store import ChatStore


class TurnState(str, Enum):
    RECEIVED = "Received"
    SESSION_RESOLVED = "SessionResolved"
    HISTORY_LOADED = "HistoryLoaded"
    COMPLETED = "Completed"
    NORMALIZED = "Normalized"
    PERSISTED = "Persisted"
    TITLE_MAYBE_GENERATED = "TitleMaybeGenerated"
    RESPONDED = "Responded"


@dataclass(frozen=True)
class TurnResult:
    session_id: str
    reply: StructuredReply
    turn_id: str


class TurnOrchestrator:
    """Entry point for tutoring turns.

    Either a turn is fully recorded (prompt plus normalised response) or nothing is
    written: every external call happens before the single turn insert, and a
    failure raises a :class:`~traxtutor.errors.TurnError` subclass.
    """

    def __init__(
        self,
        store: ChatStore,
        sessions: SessionLifecycleManager,
        invoker: CompletionInvoker,
        history: HistoryReconstructor | None = None,
        normalizer: ResponseNormalizer | None = None,
        max_history_turns: int | None = None,
        timing_logs_enabled: bool = True,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._invoker = invoker
        self._history = history or HistoryReconstructor(store)
        self._normalizer = normalizer or ResponseNormalizer()
        self._max_history_turns = max_history_turns
        self._timing_logs_enabled = timing_logs_enabled
        self._logger = logging.getLogger(__name__)

    def create_session(self, owner: str | None) -> str:
        return self._sessions.create_session(self._require_owner(owner))

    def submit_turn(self, owner: str | None, session_id: str | None, prompt: str | None) -> TurnResult:
        """Process one user message and return the persisted structured reply.

        Parameters
        ----------
        owner : str | None
            Authenticated caller identity.
        session_id : str | None
            Session to continue; missing, stale or foreign ids start a new session.
        prompt : str | None
            Raw user text.

        Returns
        -------
        TurnResult
            Session id, normalised reply and the persisted turn id.

        Raises
        ------
        Unauthorized
            If no caller identity is supplied.
        InvalidInput
            If the prompt is empty.
        ProviderUnavailable
            If the completion provider fails.
        StorageUnavailable
            If a store read or write fails.
        """
        timings: Dict[str, float] = {}
        state = TurnState.RECEIVED
        self._log_state(state, session_id)
        try:
            owner = self._require_owner(owner)
            if prompt is None or not str(prompt).strip():
                raise InvalidInput("Prompt is required.")
            prompt = str(prompt)

            start = time.perf_counter()
            session = self._sessions.resolve_or_create(owner, session_id, persist=False)
            timings["session_resolve_seconds"] = time.perf_counter() - start
            state = TurnState.SESSION_RESOLVED
            self._log_state(state, session.id)

            start = time.perf_counter()
            turns = self._store.list_turns(session.id)
            history = truncate_history(self._history.build(turns), self._max_history_turns)
            fallback_mode = recover_mode(turns)
            timings["history_load_seconds"] = time.perf_counter() - start
            state = TurnState.HISTORY_LOADED
            self._log_state(state, session.id, turns=len(turns))

            start = time.perf_counter()
            completion = self._invoker.invoke(session.mode, history, prompt)
            timings["llm_complete_seconds"] = time.perf_counter() - start
            state = TurnState.COMPLETED
            self._log_state(state, session.id, fences_stripped=completion.meta.get("fences_stripped"))

            normalized = self._normalizer.normalize(completion.text, session.mode, fallback_mode)
            state = TurnState.NORMALIZED
            self._log_state(state, session.id, parsed=normalized.parsed)

            start = time.perf_counter()
            turn = self._store.create_turn(session, owner, prompt, normalized.reply.to_json())
            if not session.persisted:
                self._logger.info("session.created session_id=%s mode=%s", session.id, session.mode.value)
            timings["turn_insert_seconds"] = time.perf_counter() - start
            state = TurnState.PERSISTED
            self._log_state(state, session.id, turn_id=turn.id)
        except TurnError as exc:
            self._logger.warning("turn.failed state=%s code=%s: %s", state.value, exc.code, exc)
            raise

        # The turn is durable from here on; a title failure must not fail it.
        try:
            self._sessions.maybe_generate_title(session)
        except TurnError as exc:
            self._logger.warning("turn.title_trigger_failed session_id=%s: %s", session.id, exc)
        self._log_state(TurnState.TITLE_MAYBE_GENERATED, session.id)

        self._log_timings("turn", timings)
        self._log_state(TurnState.RESPONDED, session.id)
        return TurnResult(session_id=session.id, reply=normalized.reply, turn_id=turn.id)

    @staticmethod
    def _require_owner(owner: str | None) -> str:
        if owner is None or not str(owner).strip():
            raise Unauthorized("A caller identity is required.")
        return str(owner)

    def _log_state(self, state: TurnState, session_id: str | None, **fields: object) -> None:
        extra = "".join(f" {key}={value}" for key, value in fields.items())
        self._logger.debug("turn.state %s session_id=%s%s", state.value, session_id, extra)

    def _log_timings(self, label: str, timings: Dict[str, float]) -> None:
        if not self._timing_logs_enabled:
            return
        if not timings:
            return
        self._finalize_timings(timings)
        ordered = ", ".join(f"{key}={timings[key]:.4f}s" for key in sorted(timings.keys()))
        self._logger.info("timings.%s %s", label, ordered)

    @staticmethod
    def _finalize_timings(timings: Dict[str, float]) -> None:
        if "total_seconds" in timings:
            return
        timings["total_seconds"] = sum(timings.values())
