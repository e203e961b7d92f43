# matchmaking/sessions.py — live connection per user (process-local)
from typing import Any, Dict, Optional


class SessionRegistry:
    """Maps a user id to the one connection that receives pushes.

    A second connection for the same user replaces the first; pushes to the
    old one stop. Nothing here is persisted: after a restart every client
    reconnects and rebinds.
    """

    def __init__(self):
        self._handles: Dict[str, Any] = {}

    def bind(self, user_id: str, handle: Any) -> Optional[Any]:
        previous = self._handles.get(user_id)
        self._handles[user_id] = handle
        return previous if previous is not handle else None

    def unbind(self, user_id: str, handle: Any) -> bool:
        # a superseded connection closing late must not drop the newer one
        if self._handles.get(user_id) is not handle:
            return False
        del self._handles[user_id]
        return True

    def lookup(self, user_id: str) -> Optional[Any]:
        return self._handles.get(user_id)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)
