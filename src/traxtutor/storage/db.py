"""SQLite connection handling: one writer thread, short-lived reader connections."""

from __future__ import annotations

import queue
import sqlite3
import threading
from concurrent.futures import Future
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator, Optional

WriteFunc = Callable[[sqlite3.Connection], Any]


class SQLiteWriter:
    """Serialise every write through a dedicated connection owned by one thread.

    Each write runs inside its own transaction: it is committed when the callable
    returns and rolled back when it raises. Reads open their own connection and
    never block on the writer queue.
    """

    # Columns that may change after insert; turns are immutable.
    _UPDATABLE_COLUMNS: dict[str, frozenset[str]] = {
        "sessions": frozenset({"title", "mode"}),
        "users": frozenset({"mode"}),
    }

    def __init__(self, db_path: str | Path, schema_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._schema_path = Path(schema_path)
        self._tasks: "queue.Queue[Optional[tuple[WriteFunc, Future]]]" = queue.Queue()
        self._thread = threading.Thread(target=self._serve, name="sqlite-writer", daemon=True)
        self._ready = threading.Event()
        self._closed = False
        self._start_error: BaseException | None = None

    def start(self) -> None:
        """Open the writer connection and apply the schema.

        Raises
        ------
        RuntimeError
            If the database could not be opened or the schema failed to apply.
        """
        self._thread.start()
        self._ready.wait()
        if self._start_error is not None:
            raise RuntimeError(f"SQLite writer failed to start: {self._start_error}") from self._start_error

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._thread.is_alive():
            self._tasks.put(None)
            self._thread.join()

    def run_write(self, func: WriteFunc) -> Any:
        """Run ``func`` on the writer connection in one transaction and return its result.

        Parameters
        ----------
        func : Callable[[sqlite3.Connection], Any]
            Work to perform; it must not commit or roll back itself.

        Returns
        -------
        Any
            Whatever ``func`` returned.

        Raises
        ------
        RuntimeError
            If the writer is not running.
        Exception
            Whatever ``func`` raised, after the transaction was rolled back.
        """
        if self._closed or not self._thread.is_alive():
            raise RuntimeError("SQLite writer is not running. Call start() first.")
        future: Future = Future()
        self._tasks.put((func, future))
        return future.result()

    def execute_update(self, table: str, values: dict[str, Any], row_id: str) -> int:
        """Update allowlisted columns of one row by id, refreshing ``updated_at``.

        Returns the number of rows changed (0 when the id is unknown).

        Raises
        ------
        ValueError
            If the table or a column may not be updated.
        """
        allowed = self._UPDATABLE_COLUMNS.get(table)
        if allowed is None:
            raise ValueError(f"Updates are not allowed for table: {table}")
        if not values:
            raise ValueError("values must not be empty.")
        rejected = sorted(set(values) - allowed)
        if rejected:
            raise ValueError(f"Columns {rejected} may not be updated on table '{table}'.")

        assignments = ", ".join(f"{column} = ?" for column in values)
        sql = f"UPDATE {table} SET {assignments}, updated_at = datetime('now') WHERE id = ?"
        params = (*values.values(), row_id)
        return self.run_write(lambda conn: conn.execute(sql, params).rowcount)

    @contextmanager
    def read_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield a fresh connection for reads; rows support access by column name."""
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("PRAGMA foreign_keys = ON;")
            yield connection
        finally:
            connection.close()

    def _serve(self) -> None:
        try:
            connection = self._open()
        except (OSError, sqlite3.Error) as exc:
            self._start_error = exc
            self._ready.set()
            return
        self._ready.set()
        try:
            while True:
                task = self._tasks.get()
                if task is None:
                    break
                func, future = task
                try:
                    with connection:
                        result = func(connection)
                except Exception as exc:  # noqa: BLE001
                    future.set_exception(exc)
                else:
                    future.set_result(result)
        finally:
            connection.close()

    def _open(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        try:
            connection.execute("PRAGMA foreign_keys = ON;")
            connection.executescript(self._schema_path.read_text(encoding="utf-8"))
            connection.commit()
        except (OSError, sqlite3.Error):
            connection.close()
            raise
        return connection
