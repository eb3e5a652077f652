"""
Session Registry: who is connected and in which role.

Holds the single admin slot and the per-connection listener states. All
mutations happen on the event loop thread, so no locking is needed. Calls
that reference an unknown connection are ignored (a race with disconnect,
not an error).
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ListenerState:
    """Per-listener record, keyed by connection id (a refresh is a new listener)."""
    connection: object
    language: str
    voice_model: Optional[str] = None
    paused: bool = False
    # Completion of the last transcript delivery scheduled for this listener
    delivery_tail: Optional[object] = field(default=None, repr=False)

    @property
    def connection_id(self) -> str:
        return self.connection.id


@dataclass
class AdminSession:
    connection: object
    source_language: Optional[str] = None

    @property
    def connection_id(self) -> str:
        return self.connection.id


class SessionRegistry:
    """In-memory admin slot + listener map for the lifetime of the process.

    ``on_admin_released`` runs whenever an admin session ends (replaced or
    disconnected) and is expected to stop the recognition stream.
    ``on_listener_released`` runs with the connection id of a departed
    listener and is expected to drop its synthesis queue.
    """

    def __init__(
        self,
        on_admin_released: Optional[Callable[[AdminSession], None]] = None,
        on_listener_released: Optional[Callable[[str], None]] = None,
    ):
        self._admin: Optional[AdminSession] = None
        self._listeners: Dict[str, ListenerState] = {}
        self.on_admin_released = on_admin_released
        self.on_listener_released = on_listener_released

    # ============== Admin ==============

    @property
    def admin(self) -> Optional[AdminSession]:
        return self._admin

    def is_admin(self, connection) -> bool:
        return self._admin is not None and self._admin.connection_id == connection.id

    def register_admin(self, connection) -> AdminSession:
        """Make ``connection`` the sole admin, ending any previous admin session."""
        previous = self._admin
        self._admin = AdminSession(connection)
        if previous is not None:
            logger.info("Admin %s replaced by %s", previous.connection_id, connection.id)
            self._release_admin(previous)
        else:
            logger.info("Admin registered: %s", connection.id)
        return self._admin

    def set_admin_language(self, connection, language: str) -> bool:
        if not self.is_admin(connection):
            return False
        self._admin.source_language = language
        return True

    def _release_admin(self, session: AdminSession) -> None:
        if self.on_admin_released is not None:
            self.on_admin_released(session)

    # ============== Listeners ==============

    def register_listener(self, connection, language: str, voice_model: Optional[str] = None) -> ListenerState:
        """Insert or overwrite the listener state for ``connection``."""
        state = ListenerState(connection, language, voice_model)
        self._listeners[connection.id] = state
        logger.info("Listener %s registered (%s, %d total)", connection.id, language, len(self._listeners))
        return state

    def get_listener(self, connection_id: str) -> Optional[ListenerState]:
        return self._listeners.get(connection_id)

    def is_listener(self, connection) -> bool:
        return connection.id in self._listeners

    def set_listener_language(self, connection, language: str) -> bool:
        state = self._listeners.get(connection.id)
        if state is None:
            logger.debug("setLanguage from unregistered connection %s ignored", connection.id)
            return False
        state.language = language
        return True

    def set_listener_voice(self, connection, voice_model: Optional[str]) -> bool:
        state = self._listeners.get(connection.id)
        if state is None:
            return False
        state.voice_model = voice_model
        return True

    def set_listener_paused(self, connection, paused: bool) -> bool:
        state = self._listeners.get(connection.id)
        if state is None:
            return False
        state.paused = paused
        return True

    def listeners(self) -> List[ListenerState]:
        """Snapshot of the current listener states."""
        return list(self._listeners.values())

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    # ============== Disconnect ==============

    def unregister(self, connection) -> None:
        """Forget every role ``connection`` held."""
        if self.is_admin(connection):
            session = self._admin
            self._admin = None
            logger.info("Admin %s disconnected", connection.id)
            self._release_admin(session)

        state = self._listeners.pop(connection.id, None)
        if state is not None:
            logger.info("Listener %s disconnected (%d remaining)", connection.id, len(self._listeners))
            if self.on_listener_released is not None:
                self.on_listener_released(connection.id)
