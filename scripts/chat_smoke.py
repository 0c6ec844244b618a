# chat_smoke.py
"""
Chat smoke test for traxtutor.
Runs one tutor turn against the configured backend using a throwaway SQLite
database and prints the normalised structured reply.

Usage:
  python scripts/chat_smoke.py --prompt "Explain binary search"
  python scripts/chat_smoke.py --backend mlx --prompt "Let's do an interview"

Install:
  pip install -e .            # openai backend (needs OPENAI_API_KEY)
  pip install -e ".[mlx]"     # local mlx-lm backend
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import os
import sys
import tempfile
import time

from traxtutor.app import build_application
from traxtutor.settings import configure_logging, load_config


def main() -> None:
    p = argparse.ArgumentParser()
    p.add_argument("--prompt", type=str, default="Explain binary search")
    p.add_argument("--backend", choices=["openai", "mlx"], default=None)
    p.add_argument("--owner", type=str, default="smoke-user")
    args = p.parse_args()

    with tempfile.TemporaryDirectory() as tmp_dir:
        os.environ["TRAXTUTOR_STORAGE_ROOT_DIR"] = tmp_dir
        if args.backend:
            os.environ["TRAXTUTOR_LLM_BACKEND"] = args.backend
        config = load_config()
        configure_logging(config)

        print(f"[chat_smoke] Backend: {config.llm.backend}")
        app = build_application(config)
        try:
            t0 = time.time()
            result = app.orchestrator.submit_turn(args.owner, None, args.prompt)
            dt = time.time() - t0
            app.sessions.wait_for_titles(timeout=60)
            session = app.store.get_session(result.session_id)

            print("\n=== STRUCTURED REPLY ===")
            print(json.dumps(result.reply.to_dict(), indent=2, ensure_ascii=False))
            print("========================\n")
            print(f"[chat_smoke] Session: {dataclasses.asdict(session) if session else None}")
            print(f"[chat_smoke] Latency: {dt:.2f}s")
        finally:
            app.close()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n[chat_smoke] Cancelled.")
        sys.exit(130)
