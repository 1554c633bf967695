from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from fairshare.logging import get_logger
from fairshare.storage.common import (
    patch_to_document,
    user_from_document,
    user_to_document,
    validate_patch,
)
from fairshare.storage.errors import ConstraintViolation, StoreUnavailable
from fairshare.storage.models import User, utcnow


class RedisStore:
    """Credential store backed by Redis hashes.

    A user lives in ``user:{id}``; ``user:username:{name}`` and
    ``user:email:{email}`` map the unique fields to the id. Multi-key writes run
    as Lua scripts so uniqueness checks and lockout counting are atomic on the
    server.
    """

    # Claims both index keys and writes the user hash in one step.
    _CREATE_SCRIPT = """
if redis.call('EXISTS', KEYS[3]) == 1 then return 'email' end
if redis.call('EXISTS', KEYS[2]) == 1 then return 'username' end
if redis.call('EXISTS', KEYS[1]) == 1 then return 'id' end
redis.call('SET', KEYS[2], ARGV[1])
redis.call('SET', KEYS[3], ARGV[1])
redis.call('HSET', KEYS[1], unpack(ARGV, 2))
return 'ok'
"""

    # HSET only when the hash exists so a patch never resurrects a missing user.
    _UPDATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then return 0 end
redis.call('HSET', KEYS[1], unpack(ARGV))
return 1
"""

    # ARGV: now (epoch), threshold, lock expiry (epoch), lock expiry (iso), now (iso)
    _FAILED_LOGIN_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then return 0 end
local now = tonumber(ARGV[1])
local threshold = tonumber(ARGV[2])
local locked_ts = tonumber(redis.call('HGET', KEYS[1], 'locked_until_ts') or '')
local lock_active = locked_ts ~= nil and locked_ts > now
if locked_ts ~= nil and not lock_active then
  redis.call('HSET', KEYS[1], 'failed_attempts', 0, 'locked_until', '', 'locked_until_ts', '')
end
local attempts = redis.call('HINCRBY', KEYS[1], 'failed_attempts', 1)
if attempts >= threshold and not lock_active then
  redis.call('HSET', KEYS[1], 'locked_until', ARGV[4], 'locked_until_ts', ARGV[3])
end
redis.call('HSET', KEYS[1], 'updated_at', ARGV[5])
return attempts
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._create = self.client.register_script(self._CREATE_SCRIPT)
        self._update = self.client.register_script(self._UPDATE_SCRIPT)
        self._failed_login = self.client.register_script(self._FAILED_LOGIN_SCRIPT)

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"user:{user_id}"

    @staticmethod
    def _username_key(username: str) -> str:
        return f"user:username:{username.strip().lower()}"

    @staticmethod
    def _email_key(email: str) -> str:
        return f"user:email:{email.strip().lower()}"

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self.logger.warning("redis_store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable(f"redis unavailable during {operation}") from exc

    @staticmethod
    def _flatten(document: Dict[str, str]) -> List[str]:
        flat: List[str] = []
        for name, value in document.items():
            flat.extend((name, value))
        return flat

    # -- lookups -----------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        with self._guard("get_user"):
            doc = self.client.hgetall(self._user_key(user_id))
        return user_from_document(doc) if doc else None

    def _get_by_index(self, index_key: str, operation: str) -> Optional[User]:
        with self._guard(operation):
            user_id = self.client.get(index_key)
        return self.get_user(user_id) if user_id else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_by_index(self._username_key(username), "get_user_by_username")

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_by_index(self._email_key(email), "get_user_by_email")

    # -- writes ------------------------------------------------------------

    def create_user(self, user: User) -> User:
        document = user_to_document(user)
        document["locked_until_ts"] = (
            str(user.security.locked_until.timestamp())
            if user.security.locked_until
            else ""
        )
        keys = [
            self._user_key(user.id),
            self._username_key(user.username),
            self._email_key(user.email),
        ]
        with self._guard("create_user"):
            result = self._create(keys=keys, args=[user.id, *self._flatten(document)])
        if result != "ok":
            raise ConstraintViolation(f"{result} already exists", {"field": result})
        return user.copy()

    def update_user(self, user_id: str, **patch: Any) -> Optional[User]:
        normalized = validate_patch(patch)
        document = patch_to_document(normalized)
        document["updated_at"] = utcnow().isoformat()
        with self._guard("update_user"):
            updated = self._update(
                keys=[self._user_key(user_id)], args=self._flatten(document)
            )
        if not updated:
            return None
        return self.get_user(user_id)

    def record_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
    ) -> Optional[User]:
        locked_until = now + lock_duration
        args = [
            str(now.timestamp()),
            str(threshold),
            str(locked_until.timestamp()),
            locked_until.isoformat(),
            now.isoformat(),
        ]
        with self._guard("record_failed_login"):
            attempts = self._failed_login(keys=[self._user_key(user_id)], args=args)
        if not attempts:
            return None
        return self.get_user(user_id)

    def reset_login_attempts(self, user_id: str) -> Optional[User]:
        document = {
            "failed_attempts": "0",
            "locked_until": "",
            "locked_until_ts": "",
            "updated_at": utcnow().isoformat(),
        }
        with self._guard("reset_login_attempts"):
            updated = self._update(
                keys=[self._user_key(user_id)], args=self._flatten(document)
            )
        if not updated:
            return None
        return self.get_user(user_id)

    # -- lifecycle ---------------------------------------------------------

    def verify_connection(self) -> bool:
        with self._guard("verify_connection"):
            return bool(self.client.ping())

    def close(self) -> None:
        self.client.close()
