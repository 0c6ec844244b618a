"""Session lifecycle: resolve-or-create, one-shot title generation, owner-scoped queries."""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Optional

from traxtutor.completion import TitleGenerator
from traxtutor.constants import DEFAULT_TITLE, TITLE_MAX_WORDS, Mode
from traxtutor.errors import SessionNotFound, TurnError
from traxtutor.history import reply_text_from_blob
from traxtutor.storage.store import ChatStore, Session, SessionSummary, Turn

_QUOTES = "\"'`“”‘’"


def clean_title(raw: str) -> str:
    """Normalise a model-written title to at most six words on one line."""
    text = raw.replace("```", " ").strip()
    text = re.sub(r"^(title)\s*:\s*", "", text, flags=re.IGNORECASE)
    text = text.splitlines()[0] if text else ""
    text = text.strip().strip(_QUOTES).strip()
    text = re.sub(r"\s+", " ", text).rstrip(".!?:;, ")
    words = text.split(" ") if text else []
    if not words:
        return DEFAULT_TITLE
    return " ".join(words[:TITLE_MAX_WORDS])


@dataclass(frozen=True)
class SessionListing:
    id: str
    title: str
    mode: Mode
    created_at: str
    last_message: Optional[str]


class SessionLifecycleManager:
    """Own session creation and the one-shot title trigger.

    Title generation runs on a small thread pool so a turn returns without waiting
    for it. The trigger is guarded only by the "title is still unset" check; two
    concurrent turns may both generate a title, and whichever write lands first is
    kept.
    """

    def __init__(
        self,
        store: ChatStore,
        title_generator: TitleGenerator | None = None,
        max_workers: int = 2,
    ) -> None:
        self._store = store
        self._title_generator = title_generator
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="title-gen")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._logger = logging.getLogger(__name__)

    def create_session(self, owner: str) -> str:
        return self._create(owner).id

    def resolve_or_create(self, owner: str, session_id: str | None, persist: bool = True) -> Session:
        """Return the caller's session, or a fresh one when the id is missing, stale or foreign.

        Parameters
        ----------
        owner : str
            Caller identity.
        session_id : str | None
            Session to continue.
        persist : bool
            When False a fresh session is only drafted; :meth:`ChatStore.create_turn`
            writes it together with its first turn, so a failed turn leaves nothing behind.

        Returns
        -------
        Session
            The resolved or new session, with its mode taken from the owner's preference.
        """
        if session_id:
            session = self._store.get_session(session_id)
            if session is not None and session.user_id == owner:
                return session
            self._logger.info("session.unresolved session_id=%s; starting a new session", session_id)
        if not persist:
            return self._store.draft_session(owner, self._store.get_user_mode(owner))
        return self._create(owner)

    def maybe_generate_title(self, session: Session) -> Future | None:
        """Schedule title generation if the session still has no title.

        Returns the scheduled future, or None when nothing was scheduled.
        """
        if self._title_generator is None or session.title is not None:
            return None
        current = self._store.get_session(session.id)
        if current is None or current.title is not None:
            return None
        future = self._executor.submit(self._generate_title, session.id)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)
        return future

    def wait_for_titles(self, timeout: float | None = None) -> None:
        """Block until every scheduled title job has finished."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def list_sessions(self, owner: str) -> list[SessionListing]:
        summaries = self._store.list_sessions(owner)
        return [self._listing(summary) for summary in summaries]

    def get_owned_session(self, owner: str, session_id: str) -> Session:
        session = self._store.get_session(session_id)
        if session is None or session.user_id != owner:
            raise SessionNotFound(f"Session not found: {session_id}")
        return session

    def get_session_turns(self, owner: str, session_id: str) -> list[Turn]:
        self.get_owned_session(owner, session_id)
        return self._store.list_turns(session_id)

    def delete_session(self, owner: str, session_id: str) -> None:
        self.get_owned_session(owner, session_id)
        self._store.delete_session_cascade(session_id)
        self._logger.info("session.deleted session_id=%s", session_id)

    def set_mode_preference(self, owner: str, mode: Mode) -> None:
        """Store the owner's preferred mode; it applies to sessions created afterwards."""
        self._store.set_user_mode(owner, Mode(mode))

    def change_session_mode(self, owner: str, session_id: str, mode: Mode) -> Session:
        """Explicitly switch the mode of an existing session."""
        self.get_owned_session(owner, session_id)
        self._store.update_session_mode(session_id, Mode(mode))
        return self.get_owned_session(owner, session_id)

    def _create(self, owner: str) -> Session:
        mode = self._store.get_user_mode(owner)
        session = self._store.create_session(owner, title=None, mode=mode)
        self._logger.info("session.created session_id=%s mode=%s", session.id, session.mode.value)
        return session

    def _generate_title(self, session_id: str) -> Optional[str]:
        try:
            first = self._store.first_turn(session_id)
            if first is None:
                return None
            raw_title = self._title_generator.generate(first.prompt, reply_text_from_blob(first.response))
            title = clean_title(raw_title)
            if self._store.update_session_title(session_id, title, only_if_unset=True):
                self._logger.info("session.title_set session_id=%s title=%r", session_id, title)
                return title
            return None
        except (TurnError, ValueError) as exc:
            self._logger.warning("session.title_failed session_id=%s: %s", session_id, exc)
            return None

    def _discard_pending(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._logger.error("session.title_job_crashed: %r", exc, exc_info=exc)

    @staticmethod
    def _listing(summary: SessionSummary) -> SessionListing:
        last_message = None
        if summary.last_response is not None:
            last_message = reply_text_from_blob(summary.last_response)
        return SessionListing(
            id=summary.id,
            title=summary.title or DEFAULT_TITLE,
            mode=summary.mode,
            created_at=summary.created_at,
            last_message=last_message,
        )
