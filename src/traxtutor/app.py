"""traxtutor application entrypoint: component wiring and a console chat loop."""

from __future__ import annotations

import argparse
import atexit
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence, TextIO

from traxtutor.completion import CompletionInvoker, TitleGenerator
from traxtutor.constants import DEFAULT_TITLE
from traxtutor.errors import TurnError
from traxtutor.models.llm_client import ChatLLM, MlxLmBackend, OpenAIChatBackend
from traxtutor.orchestrator import TurnOrchestrator
from traxtutor.prompts.loader import PromptLoader
from traxtutor.sessions import SessionLifecycleManager
from traxtutor.settings import AppConfig, configure_logging, load_config
from traxtutor.storage.db import SQLiteWriter
from traxtutor.storage.store import ChatStore

_logger = logging.getLogger(__name__)

_PACKAGE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Application:
    orchestrator: TurnOrchestrator
    sessions: SessionLifecycleManager
    store: ChatStore
    db: SQLiteWriter

    def close(self) -> None:
        self.sessions.shutdown()
        self.db.close()


def _build_llms(config: AppConfig) -> tuple[ChatLLM, ChatLLM]:
    caps = config.llm.role_max_new_tokens.__dict__
    if config.llm.backend == "mlx":
        backend = MlxLmBackend(config.llm.local_model_id)
        llm = ChatLLM(
            model_id=config.llm.local_model_id,
            role_max_new_tokens=caps,
            backend=backend,
            max_context_tokens=config.llm.max_context_tokens,
            token_counter=backend.count_tokens,
        )
        return llm, llm

    api_key = os.environ.get(config.llm.api_key_env)
    conversation = ChatLLM(
        model_id=config.llm.conversation_model_id,
        role_max_new_tokens=caps,
        backend=OpenAIChatBackend(
            config.llm.conversation_model_id,
            api_key=api_key,
            base_url=config.llm.base_url,
            timeout_seconds=config.llm.timeout_seconds,
        ),
    )
    title = ChatLLM(
        model_id=config.llm.title_model_id,
        role_max_new_tokens=caps,
        backend=OpenAIChatBackend(
            config.llm.title_model_id,
            api_key=api_key,
            base_url=config.llm.base_url,
            timeout_seconds=config.llm.timeout_seconds,
        ),
    )
    return conversation, title


def build_application(config: AppConfig) -> Application:
    """Wire storage, model clients, prompts and the turn orchestrator from config."""
    storage_root = Path(config.storage.root_dir)
    storage_root.mkdir(parents=True, exist_ok=True)
    db = SQLiteWriter(
        db_path=storage_root / "traxtutor.sqlite",
        schema_path=_PACKAGE_DIR / "storage" / "schema.sql",
    )
    db.start()
    store = ChatStore(db)

    conversation_llm, title_llm = _build_llms(config)
    prompt_loader = PromptLoader(_PACKAGE_DIR / "prompts")
    title_generator = TitleGenerator(title_llm, prompt_loader) if config.titles.enabled else None
    sessions = SessionLifecycleManager(
        store,
        title_generator=title_generator,
        max_workers=config.titles.max_workers,
    )
    orchestrator = TurnOrchestrator(
        store=store,
        sessions=sessions,
        invoker=CompletionInvoker(conversation_llm, prompt_loader),
        max_history_turns=config.history.max_turns,
        timing_logs_enabled=config.logging.timing_logs,
    )
    return Application(orchestrator=orchestrator, sessions=sessions, store=store, db=db)


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="traxtutor", description="Chat with the Trax tutor in the terminal.")
    parser.add_argument("--owner", required=True, help="Caller identity that owns the sessions.")
    parser.add_argument("--session", default=None, help="Session id to continue (a new one is created otherwise).")
    parser.add_argument("--config", default=None, help="Path to a YAML config file.")
    parser.add_argument("--list", action="store_true", help="List the owner's sessions and exit.")
    return parser.parse_args(argv)


def run_chat_loop(
    app: Application,
    owner: str,
    session_id: str | None,
    read_line: Callable[[str], str] = input,
    out: TextIO = sys.stdout,
) -> str | None:
    """Read prompts until EOF or ``/quit`` and print each structured reply."""
    while True:
        try:
            prompt = read_line("you> ")
        except EOFError:
            break
        if prompt.strip() in {"/quit", "/exit"}:
            break
        if not prompt.strip():
            continue
        try:
            result = app.orchestrator.submit_turn(owner, session_id, prompt)
        except TurnError as exc:
            print(f"[error: {exc.code}]", file=out)
            continue
        session_id = result.session_id
        reply = result.reply
        step = reply.step.value if reply.step is not None else "-"
        print(f"trax [{reply.mode.value} / {step}]> {reply.reply}", file=out)
    return session_id


def main(argv: Sequence[str] | None = None, run_loop: bool = True) -> None:
    """Load configuration, wire components and start the console chat."""
    args = _parse_args(argv)
    config = load_config(args.config)
    configure_logging(config)
    app = build_application(config)
    atexit.register(app.close)

    if args.list:
        for listing in app.sessions.list_sessions(args.owner):
            print(f"{listing.id}  {listing.title or DEFAULT_TITLE}  [{listing.mode.value}]")
        return
    if run_loop:
        session_id = run_chat_loop(app, args.owner, args.session)
        app.sessions.wait_for_titles(timeout=30)
        if session_id:
            _logger.info("chat.ended session_id=%s", session_id)


if __name__ == "__main__":
    main()
