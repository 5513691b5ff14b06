from __future__ import annotations

import copy
import hmac
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from authcore.storage.common import SecretCipher, normalize_email
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    BackupCode,
    Role,
    SecurityEvent,
    Session,
    SmsCode,
    TokenPurpose,
    User,
    VerificationToken,
)


class MemoryStore:
    """In-process store used for tests and single-node development.

    All state lives behind one re-entrant lock; every mutating method runs
    entirely inside it, which makes the counter, backup-code and SMS-code
    operations atomic. Reads hand out copies so callers cannot mutate
    stored rows.
    """

    def __init__(self, *, cipher: Optional[SecretCipher] = None) -> None:
        self._cipher = cipher
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        self.roles: Dict[str, Role] = {}
        self.sessions: Dict[str, Session] = {}
        self.backup_codes: Dict[str, List[BackupCode]] = {}
        self.sms_codes: Dict[str, SmsCode] = {}
        self.verification_tokens: Dict[str, VerificationToken] = {}
        self.security_events: List[SecurityEvent] = []
        self._data_lock = threading.RLock()
        self._backup_code_locks: Dict[str, threading.Lock] = {}

    # principals
    def _encrypt(self, secret: Optional[str]) -> Optional[str]:
        if self._cipher is None:
            return secret
        return self._cipher.encrypt(secret)

    def _decrypt(self, stored: Optional[str]) -> Optional[str]:
        if self._cipher is None:
            return stored
        return self._cipher.decrypt(stored)

    def _public_user(self, user: User) -> User:
        out = copy.deepcopy(user)
        out.two_factor_secret = self._decrypt(user.two_factor_secret)
        return out

    def create_user(self, user: User) -> User:
        email = normalize_email(user.email)
        with self._data_lock:
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = copy.deepcopy(user)
            stored.email = email
            stored.two_factor_secret = self._encrypt(user.two_factor_secret)
            self.users[stored.id] = stored
            self._email_index[email] = stored.id
            return self._public_user(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(normalize_email(email))
            user = self.users.get(user_id) if user_id else None
            return self._public_user(user) if user else None

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            self._require_user(user_id).password_hash = password_hash

    def mark_email_verified(self, user_id: str) -> None:
        with self._data_lock:
            self._require_user(user_id).email_verified = True

    def set_two_factor(
        self, user_id: str, *, enabled: bool, secret: Optional[str]
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.two_factor_enabled = enabled
            user.two_factor_secret = self._encrypt(secret)

    def assign_role(self, user_id: str, role_name: str) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            if role_name not in self.roles:
                raise ConstraintViolation("role not found", {"role": role_name})
            if role_name not in user.roles:
                user.roles.append(role_name)

    # lockout
    def register_failed_attempt(
        self, user_id: str, threshold: int, lock_until: datetime
    ) -> int:
        with self._data_lock:
            user = self._require_user(user_id)
            attempts = user.failed_attempts + 1
            if attempts >= threshold:
                user.failed_attempts = 0
                user.locked_until = lock_until
            else:
                user.failed_attempts = attempts
            return attempts

    def record_successful_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.failed_attempts = 0
            user.locked_until = None
            user.last_login_at = at

    def set_lock(self, user_id: str, locked_until: Optional[datetime]) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.failed_attempts = 0
            user.locked_until = locked_until

    # roles
    def upsert_role(self, role: Role) -> Role:
        with self._data_lock:
            self.roles[role.name] = copy.deepcopy(role)
            return copy.deepcopy(role)

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(name)
            return copy.deepcopy(role) if role else None

    def list_roles(self, names: Optional[Sequence[str]] = None) -> List[Role]:
        with self._data_lock:
            if names is None:
                return [copy.deepcopy(r) for r in self.roles.values()]
            return [copy.deepcopy(self.roles[n]) for n in names if n in self.roles]

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            self._require_user(session.user_id)
            self.sessions[session.id] = replace(session)
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            if at > sess.last_used_at:
                sess.last_used_at = at
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            found = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(found, key=lambda s: s.last_used_at, reverse=True)

    def list_sessions_created_since(
        self, user_id: str, since: datetime
    ) -> List[Session]:
        with self._data_lock:
            found = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.created_at >= since
            ]
        return sorted(found, key=lambda s: s.created_at, reverse=True)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            for sid in expired:
                self.sessions.pop(sid, None)
            return len(expired)

    # backup codes
    def replace_backup_codes(self, user_id: str, codes: Sequence[BackupCode]) -> None:
        with self._data_lock:
            self._require_user(user_id)
            self.backup_codes[user_id] = [replace(c) for c in codes]

    def consume_backup_code(
        self, user_id: str, matches: Callable[[str], bool], used_at: datetime
    ) -> bool:
        with self._data_lock:
            user_lock = self._backup_code_locks.setdefault(user_id, threading.Lock())
        # Hash checks run under the per-user lock only
        with user_lock:
            with self._data_lock:
                unused = [c for c in self.backup_codes.get(user_id, []) if not c.used]
            for code in unused:
                if not matches(code.code_hash):
                    continue
                with self._data_lock:
                    current = self.backup_codes.get(user_id, [])
                    if code.used or not any(c is code for c in current):
                        return False
                    code.used = True
                    code.used_at = used_at
                    return True
            return False

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.backup_codes.get(user_id, []) if not c.used)

    def delete_backup_codes(self, user_id: str) -> None:
        with self._data_lock:
            self.backup_codes.pop(user_id, None)

    # sms codes
    def replace_sms_code(self, sms: SmsCode) -> None:
        with self._data_lock:
            self.sms_codes[sms.phone] = replace(sms)

    def consume_sms_code(self, phone: str, code: str, now: datetime) -> bool:
        with self._data_lock:
            stored = self.sms_codes.get(phone)
            if not stored or stored.expires_at <= now:
                return False
            if not hmac.compare_digest(stored.code.encode(), code.encode()):
                return False
            del self.sms_codes[phone]
            return True

    def delete_expired_sms_codes(self, now: datetime) -> int:
        with self._data_lock:
            expired = [p for p, s in self.sms_codes.items() if s.expires_at <= now]
            for phone in expired:
                del self.sms_codes[phone]
            return len(expired)

    # verification tokens
    def save_verification_token(self, token: VerificationToken) -> None:
        with self._data_lock:
            self._require_user(token.user_id)
            self.verification_tokens[token.token_hash] = replace(token)

    def consume_verification_token(
        self, token_hash: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[str]:
        with self._data_lock:
            stored = self.verification_tokens.get(token_hash)
            if not stored or stored.purpose != purpose:
                return None
            del self.verification_tokens[token_hash]
            if stored.expires_at <= now:
                return None
            return stored.user_id

    # audit log
    def append_security_event(self, event: SecurityEvent) -> None:
        with self._data_lock:
            self.security_events.append(event)

    def list_security_events(
        self,
        since: Optional[datetime] = None,
        *,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            events = [
                e
                for e in self.security_events
                if (since is None or e.created_at >= since)
                and (user_id is None or e.user_id == user_id)
            ]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[:limit] if limit is not None else events
