"""Identity sessions consumed by the client pipeline. The login flows themselves are
provided by an external identity library, the pipeline only needs to know if the
session is usable and to refresh it once.
"""

from uuid import UUID, uuid5
import platform

from typing import Optional


class AuthSession:
    """An abstract class for defining authentication sessions. These sessions provide
    the player's access token, username and UUID.

    The client pipeline validates the session before installing anything for a launch,
    when it doesn't validate it is refreshed once and validated again.
    """

    def __init__(self):
        self.access_token = ""
        self.username = ""
        self.uuid = ""

    def validate(self) -> bool:
        """Validate that the current session is still actually authenticating the player.

        :return: True if the session is still valid, when returning false the `refresh`
        method may be called to update the session.
        """
        return True

    def refresh(self) -> None:
        """Try refreshing the session to make it valid again.
        """

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.username} ({self.uuid})>"


class OfflineAuthSession(AuthSession):
    """Offline session, this is quite contradictory but it's actually useful to simplify
    the pipeline. It provides optional static username and UUID, derived from the
    username or the host name when kept unspecified.
    """

    def __init__(self, username: Optional[str] = None, uuid: Optional[str] = None):
        super().__init__()
        if uuid is not None and len(uuid) == 32:
            # If the UUID is already valid.
            self.uuid = uuid
            self.username = uuid[:8] if username is None else username[:16]
        else:
            namespace_hash = UUID("8df5a464-38de-11ec-aa66-3fd636ee2ed7")
            if username is None:
                self.uuid = uuid5(namespace_hash, platform.node()).hex
                self.username = self.uuid[:8]
            else:
                self.username = username[:16]
                self.uuid = uuid5(namespace_hash, self.username).hex
