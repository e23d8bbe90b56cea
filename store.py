import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from models import AuthorizationCode, PendingAuthorization, RegisteredClient, TokenEntry

logger = logging.getLogger(__name__)

class OAuthStore:
    """
    In-memory OAuth state shared by every in-flight request.

    Registered clients, pending authorizations, authorization codes and token
    entries live in four maps, plus a refresh_token -> access_token index kept
    consistent with the token map on every insert and delete. A single
    reentrant lock guards all of them; callers that need several steps to be
    one critical section (check-then-mark-used, delete-then-insert) wrap them
    in ``with store.locked():``. Never await while holding it.

    Reads re-check expiry themselves, so correctness never depends on how
    recently ``sweep()`` ran.
    """

    def __init__(self, pending_auth_ttl: float = 600):
        self.pending_auth_ttl = pending_auth_ttl

        self._lock = threading.RLock()
        self._clients: Dict[str, RegisteredClient] = {}
        self._pending: Dict[str, PendingAuthorization] = {}
        self._codes: Dict[str, AuthorizationCode] = {}
        self._tokens: Dict[str, TokenEntry] = {}  # keyed by access_token
        self._refresh_index: Dict[str, str] = {}  # refresh_token -> access_token

    @contextmanager
    def locked(self) -> Iterator["OAuthStore"]:
        with self._lock:
            yield self

    # Clients

    def save_client(self, client: RegisteredClient) -> None:
        with self._lock:
            if client.client_id in self._clients:
                raise ValueError(f"client_id already registered: {client.client_id}")
            self._clients[client.client_id] = client

    def get_client(self, client_id: str) -> Optional[RegisteredClient]:
        with self._lock:
            return self._clients.get(client_id)

    def delete_client(self, client_id: str) -> bool:
        with self._lock:
            return self._clients.pop(client_id, None) is not None

    # Pending authorizations

    def save_pending_auth(self, pending: PendingAuthorization) -> None:
        with self._lock:
            self._pending[pending.state] = pending

    def get_pending_auth(self, state: str) -> Optional[PendingAuthorization]:
        with self._lock:
            pending = self._pending.get(state)
            if pending is None:
                return None
            if pending.is_expired(time.time(), self.pending_auth_ttl):
                del self._pending[state]
                return None
            return pending

    def take_pending_auth(self, state: str) -> Optional[PendingAuthorization]:
        """Remove and return a live pending authorization; None if unknown or expired"""
        with self._lock:
            pending = self.get_pending_auth(state)
            if pending is not None:
                del self._pending[state]
            return pending

    # Authorization codes

    def save_auth_code(self, auth_code: AuthorizationCode) -> None:
        with self._lock:
            self._codes[auth_code.code] = auth_code

    def get_auth_code(self, code: str) -> Optional[AuthorizationCode]:
        with self._lock:
            return self._codes.get(code)

    def mark_auth_code_used(self, code: str) -> None:
        with self._lock:
            auth_code = self._codes.get(code)
            if auth_code is not None:
                auth_code.used = True

    def delete_auth_code(self, code: str) -> None:
        with self._lock:
            self._codes.pop(code, None)

    # Tokens

    def save_token(self, entry: TokenEntry) -> None:
        with self._lock:
            if entry.access_token in self._tokens:
                raise ValueError("access_token collision")
            if entry.refresh_token and entry.refresh_token in self._refresh_index:
                raise ValueError("refresh_token collision")
            self._tokens[entry.access_token] = entry
            if entry.refresh_token:
                self._refresh_index[entry.refresh_token] = entry.access_token

    def get_token(self, access_token: str) -> Optional[TokenEntry]:
        with self._lock:
            return self._tokens.get(access_token)

    def get_token_by_refresh_token(self, refresh_token: str) -> Optional[TokenEntry]:
        with self._lock:
            access_token = self._refresh_index.get(refresh_token)
            if access_token is None:
                return None
            return self._tokens.get(access_token)

    def delete_token(self, access_token: str) -> bool:
        with self._lock:
            entry = self._tokens.pop(access_token, None)
            if entry is None:
                return False
            if entry.refresh_token:
                self._refresh_index.pop(entry.refresh_token, None)
            return True

    def delete_token_by_refresh_token(self, refresh_token: str) -> bool:
        with self._lock:
            access_token = self._refresh_index.get(refresh_token)
            if access_token is None:
                return False
            return self.delete_token(access_token)

    # Sweep

    def sweep(self) -> Dict[str, int]:
        """Drop expired pending auths, expired or used codes and tokens whose identity token expired"""
        now = time.time()
        with self._lock:
            expired_pending = [
                state for state, pending in self._pending.items()
                if pending.is_expired(now, self.pending_auth_ttl)
            ]
            for state in expired_pending:
                del self._pending[state]

            expired_codes = [
                code for code, auth_code in self._codes.items()
                if auth_code.used or auth_code.is_expired(now)
            ]
            for code in expired_codes:
                del self._codes[code]

            expired_tokens = [
                access_token for access_token, entry in self._tokens.items()
                if entry.is_expired(now)
            ]
            for access_token in expired_tokens:
                self.delete_token(access_token)

        removed = {
            "pending_authorizations": len(expired_pending),
            "authorization_codes": len(expired_codes),
            "tokens": len(expired_tokens),
        }
        if any(removed.values()):
            logger.info(
                f"Cleaned up {removed['pending_authorizations']} pending authorizations, "
                f"{removed['authorization_codes']} codes, {removed['tokens']} tokens"
            )
        return removed

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                "clients": len(self._clients),
                "pending_authorizations": len(self._pending),
                "authorization_codes": len(self._codes),
                "tokens": len(self._tokens),
                "refresh_tokens": len(self._refresh_index),
            }
