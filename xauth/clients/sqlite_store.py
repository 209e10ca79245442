"""SQLite-backed persistence for users, sessions, encrypted tokens and pairings."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from xauth.models.records import PairingSession, Session, User, UserStats, UserToken

logger = logging.getLogger(__name__)

SESSION_TTL = timedelta(days=30)
PAIRING_TTL = timedelta(minutes=10)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at INTEGER NOT NULL,
    display_name TEXT NOT NULL,
    x_user_id TEXT UNIQUE NOT NULL,
    x_username TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL,
    session_secret_hash TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS user_tokens (
    user_id INTEGER PRIMARY KEY,
    provider TEXT NOT NULL DEFAULT 'x',
    x_user_id TEXT NOT NULL,
    granted_scopes TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    expires_at INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS pairing_sessions (
    pairing_code TEXT PRIMARY KEY,
    created_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL,
    code_verifier TEXT NOT NULL,
    state TEXT NOT NULL,
    user_id INTEGER NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions (user_id);
CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions (expires_at);
CREATE INDEX IF NOT EXISTS idx_user_tokens_x_user_id ON user_tokens (x_user_id);
CREATE INDEX IF NOT EXISTS idx_pairing_sessions_expires_at ON pairing_sessions (expires_at);
CREATE INDEX IF NOT EXISTS idx_pairing_sessions_state ON pairing_sessions (state);
"""


class DuplicateRecordError(Exception):
    """Raised when an insert collides with a unique key."""


def _to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteStore:
    """Durable, indexed CRUD over the four credential tables.

    Expiry is enforced on every read; the cleanup methods only reclaim space
    and never touch rows whose ``expires_at`` lies in the future.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db_path = Path(db_path)
        self._clock = clock
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        self.cleanup_expired_sessions()
        self.cleanup_expired_pairing_sessions()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _now_ms(self) -> int:
        return _to_ms(self._clock())

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._transaction() as conn:
            conn.executescript(_SCHEMA)

    # Users ---------------------------------------------------------------

    @staticmethod
    def _user_from_row(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            created_at=_from_ms(row["created_at"]),
            x_user_id=row["x_user_id"],
            x_username=row["x_username"],
            display_name=row["display_name"],
        )

    def create_user(
        self, x_user_id: str, x_username: str, display_name: Optional[str] = None
    ) -> User:
        now = self._now_ms()
        name = display_name or x_username
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO users (created_at, display_name, x_user_id, x_username)
                    VALUES (?, ?, ?, ?)
                    """,
                    (now, name, x_user_id, x_username),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateRecordError(f"User {x_user_id} already exists.") from exc
        return User(
            id=user_id,
            created_at=_from_ms(now),
            x_user_id=x_user_id,
            x_username=x_username,
            display_name=name,
        )

    def get_user_by_x_user_id(self, x_user_id: str) -> Optional[User]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE x_user_id = ?", (x_user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(
        self,
        user_id: int,
        *,
        x_username: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> None:
        """Update the mutable profile fields; ``x_user_id`` never changes."""
        updates = {
            column: value
            for column, value in (("x_username", x_username), ("display_name", display_name))
            if value is not None
        }
        if not updates:
            return
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE users SET {assignments} WHERE id = ?",
                (*updates.values(), user_id),
            )

    def list_users(self) -> list[User]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at DESC, id DESC"
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def get_user_stats(self, user_id: int) -> UserStats:
        with self._transaction() as conn:
            sessions = conn.execute(
                """
                SELECT COUNT(*) AS count, MAX(created_at) AS last_activity
                FROM sessions WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
            tokens = conn.execute(
                "SELECT COUNT(*) AS count FROM user_tokens WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return UserStats(
            session_count=sessions["count"],
            last_activity=_from_ms(sessions["last_activity"]),
            has_tokens=tokens["count"] > 0,
        )

    # Sessions ------------------------------------------------------------

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            created_at=_from_ms(row["created_at"]),
            expires_at=_from_ms(row["expires_at"]),
            session_secret_hash=row["session_secret_hash"],
        )

    def create_session(
        self,
        user_id: int,
        session_id: str,
        session_secret_hash: str,
        expires_at: Optional[datetime] = None,
    ) -> Session:
        now = self._clock()
        expires = expires_at or now + SESSION_TTL
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, user_id, created_at, expires_at, session_secret_hash)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, user_id, _to_ms(now), _to_ms(expires), session_secret_hash),
            )
        return Session(
            id=session_id,
            user_id=user_id,
            created_at=_from_ms(_to_ms(now)),
            expires_at=_from_ms(_to_ms(expires)),
            session_secret_hash=session_secret_hash,
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = ? AND expires_at > ?",
                (session_id, self._now_ms()),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))

    def cleanup_expired_sessions(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM sessions WHERE expires_at <= ?", (self._now_ms(),)
            )
        if cursor.rowcount:
            logger.info("Removed %d expired session(s)", cursor.rowcount)
        return cursor.rowcount

    # Tokens --------------------------------------------------------------

    @staticmethod
    def _token_from_row(row: sqlite3.Row) -> UserToken:
        return UserToken(
            user_id=row["user_id"],
            provider=row["provider"],
            x_user_id=row["x_user_id"],
            granted_scopes=row["granted_scopes"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=_from_ms(row["expires_at"]),
            created_at=_from_ms(row["created_at"]),
            updated_at=_from_ms(row["updated_at"]),
        )

    @staticmethod
    def _upsert_tokens(conn: sqlite3.Connection, token: UserToken, now: int) -> None:
        conn.execute(
            """
            INSERT INTO user_tokens (
                user_id, provider, x_user_id, granted_scopes, access_token,
                refresh_token, expires_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                provider = excluded.provider,
                x_user_id = excluded.x_user_id,
                granted_scopes = excluded.granted_scopes,
                access_token = excluded.access_token,
                refresh_token = excluded.refresh_token,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
            """,
            (
                token.user_id,
                token.provider,
                token.x_user_id,
                token.granted_scopes,
                token.access_token,
                token.refresh_token,
                _to_ms(token.expires_at),
                now,
                now,
            ),
        )

    def save_user_tokens(self, token: UserToken) -> None:
        """Upsert the user's token row, keeping the original ``created_at``."""
        with self._transaction() as conn:
            self._upsert_tokens(conn, token, self._now_ms())

    def get_user_tokens(self, user_id: int) -> Optional[UserToken]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM user_tokens WHERE user_id = ?", (user_id,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def delete_user_tokens(
        self, user_id: int, *, refresh_token: Optional[str] = None
    ) -> bool:
        """Delete the user's tokens.

        With ``refresh_token`` the row is only removed while it still holds
        that ciphertext, so a row rewritten by a concurrent refresh survives.
        """
        query = "DELETE FROM user_tokens WHERE user_id = ?"
        params: tuple = (user_id,)
        if refresh_token is not None:
            query += " AND refresh_token = ?"
            params = (user_id, refresh_token)
        with self._transaction() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount == 1

    # Logins --------------------------------------------------------------

    def record_login(
        self,
        *,
        x_user_id: str,
        x_username: str,
        display_name: Optional[str],
        granted_scopes: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        pairing_code: Optional[str] = None,
    ) -> Optional[User]:
        """Get-or-create the user and store their tokens in one transaction.

        With ``pairing_code`` the pairing is completed and bound to the user
        in the same transaction. If the pairing is unknown, expired or already
        completed, ``None`` is returned and nothing is written.
        """
        now = self._now_ms()
        with self._transaction() as conn:
            if pairing_code is not None:
                cursor = conn.execute(
                    """
                    UPDATE pairing_sessions SET completed = 1
                    WHERE pairing_code = ? AND expires_at > ? AND completed = 0
                    """,
                    (pairing_code, now),
                )
                if cursor.rowcount != 1:
                    return None
            conn.execute(
                """
                INSERT INTO users (created_at, display_name, x_user_id, x_username)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(x_user_id) DO UPDATE SET
                    x_username = excluded.x_username,
                    display_name = COALESCE(?, users.display_name)
                """,
                (now, display_name or x_username, x_user_id, x_username, display_name),
            )
            row = conn.execute(
                "SELECT * FROM users WHERE x_user_id = ?", (x_user_id,)
            ).fetchone()
            user = self._user_from_row(row)
            if pairing_code is not None:
                conn.execute(
                    "UPDATE pairing_sessions SET user_id = ? WHERE pairing_code = ?",
                    (user.id, pairing_code),
                )
            self._upsert_tokens(
                conn,
                UserToken(
                    user_id=user.id,
                    x_user_id=x_user_id,
                    granted_scopes=granted_scopes,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    expires_at=expires_at,
                ),
                now,
            )
        return user

    # Pairing sessions ----------------------------------------------------

    @staticmethod
    def _pairing_from_row(row: sqlite3.Row) -> PairingSession:
        return PairingSession(
            pairing_code=row["pairing_code"],
            created_at=_from_ms(row["created_at"]),
            expires_at=_from_ms(row["expires_at"]),
            code_verifier=row["code_verifier"],
            state=row["state"],
            user_id=row["user_id"],
            completed=bool(row["completed"]),
        )

    def create_pairing_session(
        self,
        pairing_code: str,
        code_verifier: str,
        state: str,
        expires_at: Optional[datetime] = None,
    ) -> PairingSession:
        now = self._clock()
        expires = expires_at or now + PAIRING_TTL
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO pairing_sessions
                        (pairing_code, created_at, expires_at, code_verifier, state, completed)
                    VALUES (?, ?, ?, ?, ?, 0)
                    """,
                    (pairing_code, _to_ms(now), _to_ms(expires), code_verifier, state),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateRecordError(
                f"Pairing code {pairing_code} is already in use."
            ) from exc
        return PairingSession(
            pairing_code=pairing_code,
            created_at=_from_ms(_to_ms(now)),
            expires_at=_from_ms(_to_ms(expires)),
            code_verifier=code_verifier,
            state=state,
        )

    def get_pairing_session(self, pairing_code: str) -> Optional[PairingSession]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pairing_sessions WHERE pairing_code = ? AND expires_at > ?",
                (pairing_code, self._now_ms()),
            ).fetchone()
        return self._pairing_from_row(row) if row else None

    def get_pairing_session_by_state(self, state: str) -> Optional[PairingSession]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pairing_sessions WHERE state = ? AND expires_at > ?",
                (state, self._now_ms()),
            ).fetchone()
        return self._pairing_from_row(row) if row else None

    def complete_pairing_session(self, pairing_code: str, user_id: int) -> bool:
        """Bind and complete a pairing in one statement.

        Returns ``False`` when the pairing is unknown, expired or already
        completed; in that case nothing is written.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pairing_sessions
                SET user_id = ?, completed = 1
                WHERE pairing_code = ? AND expires_at > ? AND completed = 0
                """,
                (user_id, pairing_code, self._now_ms()),
            )
        return cursor.rowcount == 1

    def delete_pairing_session(self, pairing_code: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM pairing_sessions WHERE pairing_code = ?", (pairing_code,)
            )
        return cursor.rowcount == 1

    def cleanup_expired_pairing_sessions(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM pairing_sessions WHERE expires_at <= ?", (self._now_ms(),)
            )
        if cursor.rowcount:
            logger.info("Removed %d expired pairing session(s)", cursor.rowcount)
        return cursor.rowcount

    # Maintenance ---------------------------------------------------------

    def backup(self, destination: str | Path) -> None:
        """Write a consistent copy of the database to ``destination``."""
        target = sqlite3.connect(str(destination))
        try:
            with self._transaction() as conn:
                conn.backup(target)
        finally:
            target.close()


__all__ = ["DuplicateRecordError", "PAIRING_TTL", "SESSION_TTL", "SQLiteStore"]
