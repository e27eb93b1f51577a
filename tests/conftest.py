"""
Pytest configuration and shared fixtures.

Settings are pointed at test values before any app imports, and the
settings cache is cleared so they take effect.
"""

import os
from datetime import datetime
from typing import Dict, List, Set, Tuple

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("POLL_INTERVAL", "3600")

from app.config import get_settings  # noqa: E402
get_settings.cache_clear()

from app.errors import SourceError  # noqa: E402
from app.modem import ModemIdentity, ModemSource, TransientMessage  # noqa: E402
from app.storage import MessageStore  # noqa: E402


class FakeModemSource(ModemSource):
    """
    In-memory ModemSource.

    Records every deletion attempt and can be told to fail enumeration,
    listing for particular modems, or deletion.
    """

    def __init__(self):
        self.modems: Dict[str, ModemIdentity] = {}
        self.pending: Dict[str, List[TransientMessage]] = {}
        self.delete_calls: List[Tuple[str, str]] = []
        self.fail_list_modems = False
        self.fail_listing: Set[str] = set()
        self.fail_delete = False
        self.closed = False
        self._next_sms = 0

    def add_modem(self, path: str, imei: str) -> ModemIdentity:
        modem = ModemIdentity(connection_path=path, imei=imei)
        self.modems[path] = modem
        self.pending.setdefault(path, [])
        return modem

    def add_message(self, modem: ModemIdentity, sender: str, text: str, timestamp: datetime) -> TransientMessage:
        sms = TransientMessage(
            sender=sender,
            text=text,
            timestamp=timestamp,
            source_message_path=f"/org/freedesktop/ModemManager1/SMS/{self._next_sms}",
        )
        self._next_sms += 1
        self.pending[modem.connection_path].append(sms)
        return sms

    async def list_modems(self) -> List[ModemIdentity]:
        if self.fail_list_modems:
            raise SourceError("ModemManager not reachable")
        return sorted(self.modems.values(), key=lambda m: m.connection_path)

    async def list_pending_messages(self, modem: ModemIdentity) -> List[TransientMessage]:
        if modem.connection_path in self.fail_listing:
            raise SourceError(f"Failed to list SMS messages on {modem.connection_path}")
        return list(self.pending.get(modem.connection_path, []))

    async def delete_message(self, modem: ModemIdentity, message_path: str) -> None:
        self.delete_calls.append((modem.connection_path, message_path))
        if self.fail_delete:
            raise SourceError("Failed to delete SMS from modem")
        self.pending[modem.connection_path] = [
            sms for sms in self.pending[modem.connection_path]
            if sms.source_message_path != message_path
        ]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def source() -> FakeModemSource:
    return FakeModemSource()


@pytest.fixture
def store(tmp_path) -> MessageStore:
    """Fresh file-backed store per test."""
    message_store = MessageStore(f"sqlite:///{tmp_path / 'messages.db'}")
    message_store.init_db()
    yield message_store
    message_store.dispose()
