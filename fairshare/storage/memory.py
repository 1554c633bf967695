from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from fairshare.logging import get_logger
from fairshare.storage.common import (
    apply_failed_login,
    apply_patch,
    user_from_document,
    user_to_document,
    validate_patch,
)
from fairshare.storage.errors import ConstraintViolation
from fairshare.storage.models import User, utcnow


class MemoryStore:
    """In-process credential store, optionally mirrored to a JSON state file.

    Every method takes ``_data_lock`` for its whole duration, so the
    read-modify-write in ``record_failed_login`` is atomic with respect to other
    threads. Callers always receive copies; mutating a returned user does not
    change stored state.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # lower-cased username/email -> user id
        self._by_username: Dict[str, str] = {}
        self._by_email: Dict[str, str] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info("memory_store_state_loaded", users=len(self.users))

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # -- lookups -----------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.copy() if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._by_username.get(username.strip().lower())
            return self.get_user(user_id) if user_id else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._by_email.get(email.strip().lower())
            return self.get_user(user_id) if user_id else None

    # -- writes ------------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.email in self._by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.username in self._by_username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            stored = user.copy()
            self.users[stored.id] = stored
            self._by_username[stored.username] = stored.id
            self._by_email[stored.email] = stored.id
            self._persist_state()
            return stored.copy()

    def update_user(self, user_id: str, **patch: Any) -> Optional[User]:
        normalized = validate_patch(patch)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            apply_patch(user, normalized, utcnow())
            self._persist_state()
            return user.copy()

    def record_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            apply_failed_login(user, now, threshold, lock_duration)
            self._persist_state()
            return user.copy()

    def reset_login_attempts(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.security.failed_attempts = 0
            user.security.locked_until = None
            user.updated_at = utcnow()
            self._persist_state()
            return user.copy()

    # -- lifecycle ---------------------------------------------------------

    def verify_connection(self) -> bool:
        return True

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"users": [user_to_document(u) for u in self.users.values()]}
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        users = [user_from_document(doc) for doc in data.get("users", [])]
        self.users = {u.id: u for u in users}
        self._by_username = {u.username: u.id for u in users}
        self._by_email = {u.email: u.id for u in users}
        return True
