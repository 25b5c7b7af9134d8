"""
Permissions and HTTP authentication for the Transmission RPC adapter
"""

import hmac
from typing import Dict, Optional, Tuple

from logging_utils import log_debug, log_warning

# Key id for settings that only exist in the adapter, not in the engine
ADAPTER_SETTINGS = -1


class PermissionsInterface:
    """What an authenticated user may do

    Settings predicates take an engine SettingKey, or ADAPTER_SETTINGS.
    """

    def allow_add(self) -> bool:
        raise NotImplementedError

    def allow_remove(self) -> bool:
        raise NotImplementedError

    def allow_list(self) -> bool:
        raise NotImplementedError

    def allow_start(self) -> bool:
        raise NotImplementedError

    def allow_stop(self) -> bool:
        raise NotImplementedError

    def allow_recheck(self) -> bool:
        raise NotImplementedError

    def allow_session_status(self) -> bool:
        raise NotImplementedError

    def allow_get_settings(self, key_id: int) -> bool:
        raise NotImplementedError

    def allow_set_settings(self, key_id: int) -> bool:
        raise NotImplementedError


class FullPermissions(PermissionsInterface):
    def allow_add(self):
        return True

    def allow_remove(self):
        return True

    def allow_list(self):
        return True

    def allow_start(self):
        return True

    def allow_stop(self):
        return True

    def allow_recheck(self):
        return True

    def allow_session_status(self):
        return True

    def allow_get_settings(self, key_id):
        return True

    def allow_set_settings(self, key_id):
        return True


class ReadOnlyPermissions(PermissionsInterface):
    def allow_add(self):
        return False

    def allow_remove(self):
        return False

    def allow_list(self):
        return True

    def allow_start(self):
        return False

    def allow_stop(self):
        return False

    def allow_recheck(self):
        return False

    def allow_session_status(self):
        return True

    def allow_get_settings(self, key_id):
        return True

    def allow_set_settings(self, key_id):
        return False


class AuthInterface:
    def find_user(self, username: str, password: str) -> Optional[PermissionsInterface]:
        """Permissions for the credentials, or None to reject them"""
        raise NotImplementedError


class NoAuth(AuthInterface):
    """Accepts any credentials with full permissions"""

    def __init__(self):
        self._permissions = FullPermissions()

    def find_user(self, username, password):
        return self._permissions


class BasicAuth(AuthInterface):
    """Fixed set of users checked against HTTP basic credentials"""

    def __init__(self, username: Optional[str] = None, password: Optional[str] = None):
        self._users: Dict[str, Tuple[str, PermissionsInterface]] = {}
        if username is not None and password is not None:
            self.add_user(username, password)

    def add_user(self, username: str, password: str, permissions: Optional[PermissionsInterface] = None):
        self._users[username] = (password, permissions or FullPermissions())

    def find_user(self, username, password):
        entry = self._users.get(username)
        if entry is None:
            return None
        expected, permissions = entry
        if not hmac.compare_digest(expected.encode('utf-8'), password.encode('utf-8')):
            return None
        return permissions


def parse_http_auth(request, auth: AuthInterface) -> Optional[PermissionsInterface]:
    """Check the request's basic credentials; None means unauthorized"""
    credentials = request.authorization
    username = ''
    password = ''
    if credentials is not None and credentials.type == 'basic':
        username = credentials.username or ''
        password = credentials.password or ''

    permissions = auth.find_user(username, password)
    if permissions is None:
        log_warning(f"[AUTH] Authentication failed for user '{username}'")
    else:
        log_debug(f"[AUTH] Authenticated user '{username}'")
    return permissions
