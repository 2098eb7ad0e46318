from __future__ import annotations

import logging
import threading
from typing import Dict, Generic, List, Optional, TypeVar

log = logging.getLogger("msgrelay.registry")

S = TypeVar("S")


class SessionRegistry(Generic[S]):
    """identity -> currently live session. The last registration wins.

    Removal is guarded: a session may only remove the entry that still points
    at it, so a late cleanup from a displaced session never evicts its
    replacement.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, S] = {}
        self._lock = threading.Lock()

    def __contains__(self, identity: object) -> bool:
        return identity in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def register(self, identity: str, session: S) -> Optional[S]:
        """Bind ``identity`` to ``session`` and return the displaced session, if any."""

        with self._lock:
            previous = self._sessions.get(identity)
            self._sessions[identity] = session
        if previous is not None and previous is not session:
            log.info("Session for %s displaced by a newer connection", identity)
            return previous
        return None

    def get(self, identity: str) -> Optional[S]:
        return self._sessions.get(identity)

    def remove_if_current(self, identity: str, session: S) -> bool:
        with self._lock:
            if self._sessions.get(identity) is not session:
                log.debug("Ignored stale removal for %s", identity)
                return False
            del self._sessions[identity]
        return True

    def identities(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)


__all__ = ["SessionRegistry"]
