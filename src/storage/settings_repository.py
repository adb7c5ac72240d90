"""
System settings: small key/value records such as the open-ticket limit.

Shared mode keeps them in the system_settings table; the local store keeps
one mirrored collection holding every setting.
"""
import logging
from typing import Optional

from src.shared.errors import BackendUnavailable
from src.storage.backends import Backends, StorageSession
from src.storage.mode import StorageMode

log = logging.getLogger(__name__)

SETTINGS_KEY = "velox_system_settings"


class SettingsRepository:

    def __init__(self, backends: Backends):
        self.backends = backends

    def get(self, key: str, default: Optional[str] = None, session: Optional[StorageSession] = None) -> Optional[str]:
        if session is not None:
            return self._get(session, key, default)
        with self.backends.session() as s:
            return self._get(s, key, default)

    def _get(self, s: StorageSession, key: str, default: Optional[str]) -> Optional[str]:
        if s.mode == StorageMode.SHARED:
            try:
                rows = s.execute(
                    "SELECT setting_value FROM system_settings WHERE setting_key = :key", {"key": key}
                )
            except BackendUnavailable as e:
                if s.write:
                    raise
                log.warning("Setting %s: shared read failed, serving local mirror: %s", key, e)
            else:
                value = rows[0]["setting_value"] if rows else None
                if value is not None:
                    self._mirror(s, key, value)
                return value if value is not None else default

        for item in s.read_collection(SETTINGS_KEY):
            if item.get("key") == key:
                return item.get("value")
        return default

    def set(self, key: str, value: str, session: Optional[StorageSession] = None) -> None:
        if session is not None:
            self._set(session, key, value)
            return
        with self.backends.session(write=True) as s:
            self._set(s, key, value)

    def _set(self, s: StorageSession, key: str, value: str) -> None:
        if s.mode == StorageMode.SHARED:
            params = {"key": key, "value": value}
            updated = s.execute(
                "UPDATE system_settings SET setting_value = :value WHERE setting_key = :key", params
            )
            if updated == 0:
                s.execute(
                    "INSERT INTO system_settings (setting_key, setting_value) VALUES (:key, :value)", params
                )
        self._mirror(s, key, value)

    def clear(self, session: StorageSession) -> None:
        if session.mode == StorageMode.SHARED:
            session.execute("DELETE FROM system_settings")
        session.write_collection(SETTINGS_KEY, [])

    @staticmethod
    def _mirror(s: StorageSession, key: str, value: str) -> None:
        items = [i for i in s.read_collection(SETTINGS_KEY) if i.get("key") != key]
        items.append({"key": key, "value": value})
        s.write_collection(SETTINGS_KEY, items)
