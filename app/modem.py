"""
Modem access for the SMS poller.

ModemSource is the capability the poller depends on. DBusModemSource is the
production implementation, speaking to ModemManager over the system bus.
D-Bus property bags are validated and converted to typed values here so
nothing past this module sees a Variant.
"""

import abc
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from dbus_fast import BusType, Message, MessageType, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.validators import is_object_path_valid

from app.errors import MalformedTimestamp, SourceError
from app.utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)


MM_SERVICE = "org.freedesktop.ModemManager1"
MM_PATH = "/org/freedesktop/ModemManager1"
MM_MODEM_INTERFACE = "org.freedesktop.ModemManager1.Modem"
MM_MESSAGING_INTERFACE = "org.freedesktop.ModemManager1.Modem.Messaging"
MM_SMS_INTERFACE = "org.freedesktop.ModemManager1.Sms"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"

# MMSmsState: parts of a multi-part message are still arriving
MM_SMS_STATE_RECEIVING = 2


@dataclass(frozen=True)
class ModemIdentity:
    """A modem seen during one poll cycle."""
    connection_path: str
    imei: str


@dataclass(frozen=True)
class TransientMessage:
    """An SMS still held in a modem's storage."""
    sender: str
    text: str
    timestamp: datetime
    source_message_path: str


class ModemSource(abc.ABC):
    """
    Where pending SMS messages come from.

    All operations raise SourceError on failure. Message paths are only
    valid within the poll cycle that listed them.
    """

    @abc.abstractmethod
    async def list_modems(self) -> List[ModemIdentity]:
        """Return visible modems sorted by connection path."""

    @abc.abstractmethod
    async def list_pending_messages(self, modem: ModemIdentity) -> List[TransientMessage]:
        """Return the messages currently queued on a modem, in source order."""

    @abc.abstractmethod
    async def delete_message(self, modem: ModemIdentity, message_path: str) -> None:
        """Remove one message from a modem's storage."""

    async def close(self) -> None:
        """Release the underlying transport."""


def _require_str(props: Dict[str, Any], name: str, obj_path: str) -> str:
    variant = props.get(name)
    if variant is None:
        raise SourceError(f"{obj_path} has no {name} property")
    value = variant.value if isinstance(variant, Variant) else variant
    if not isinstance(value, str):
        raise SourceError(f"{obj_path} property {name} is not a string: {value!r}")
    return value


def _optional_int(props: Dict[str, Any], name: str) -> Optional[int]:
    variant = props.get(name)
    if variant is None:
        return None
    value = variant.value if isinstance(variant, Variant) else variant
    return value if isinstance(value, int) else None


class DBusModemSource(ModemSource):
    """
    ModemSource backed by ModemManager on the system D-Bus.

    Pass an already connected bus, or use DBusModemSource.connect().
    """

    def __init__(self, bus: MessageBus):
        self.bus = bus

    @classmethod
    async def connect(cls) -> "DBusModemSource":
        """Connect to the system bus."""
        try:
            bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        except Exception as e:
            raise SourceError(f"Failed to connect to system D-Bus: {e}") from e
        logger.info("Connected to system D-Bus")
        return cls(bus)

    async def close(self) -> None:
        self.bus.disconnect()

    async def _call(
        self,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: Optional[list] = None,
    ) -> list:
        """Call a ModemManager method and return the reply body."""
        try:
            reply = await self.bus.call(
                Message(
                    destination=MM_SERVICE,
                    path=path,
                    interface=interface,
                    member=member,
                    signature=signature,
                    body=body or [],
                )
            )
        except Exception as e:
            raise SourceError(f"{interface}.{member} on {path} failed: {e}") from e

        if reply is None:
            raise SourceError(f"{interface}.{member} on {path} returned no reply")

        if reply.message_type == MessageType.ERROR:
            detail = reply.body[0] if reply.body else ""
            raise SourceError(f"{interface}.{member} on {path} failed: {reply.error_name} {detail}".rstrip())

        return reply.body

    async def _get_property(self, path: str, interface: str, name: str) -> Variant:
        body = await self._call(path, PROPERTIES_INTERFACE, "Get", "ss", [interface, name])
        return body[0]

    # =========================================================================
    # ModemSource
    # =========================================================================

    async def list_modems(self) -> List[ModemIdentity]:
        body = await self._call(MM_PATH, OBJECT_MANAGER_INTERFACE, "GetManagedObjects")
        objects = body[0] if body else {}
        if not isinstance(objects, dict):
            raise SourceError(f"Unexpected GetManagedObjects reply: {objects!r}")

        modems = []
        for path, interfaces in objects.items():
            if MM_MODEM_INTERFACE not in interfaces:
                continue

            props = dict(interfaces[MM_MODEM_INTERFACE] or {})
            if "EquipmentIdentifier" not in props:
                props["EquipmentIdentifier"] = await self._get_property(
                    path, MM_MODEM_INTERFACE, "EquipmentIdentifier"
                )
            imei = _require_str(props, "EquipmentIdentifier", path)
            modems.append(ModemIdentity(connection_path=str(path), imei=imei))

        modems.sort(key=lambda m: m.connection_path)
        return modems

    async def list_pending_messages(self, modem: ModemIdentity) -> List[TransientMessage]:
        body = await self._call(modem.connection_path, MM_MESSAGING_INTERFACE, "List")
        sms_paths = body[0] if body else []

        messages = []
        for sms_path in sms_paths:
            props_body = await self._call(
                sms_path, PROPERTIES_INTERFACE, "GetAll", "s", [MM_SMS_INTERFACE]
            )
            props = props_body[0] if props_body else {}

            if _optional_int(props, "State") == MM_SMS_STATE_RECEIVING:
                logger.debug(
                    "SMS still being received, leaving it for a later cycle",
                    extra={"imei": modem.imei, "message_path": sms_path},
                )
                continue

            sender = _require_str(props, "Number", sms_path)
            text = _require_str(props, "Text", sms_path)
            timestamp_str = _require_str(props, "Timestamp", sms_path)

            try:
                timestamp = parse_timestamp(timestamp_str)
            except MalformedTimestamp as e:
                logger.warning(
                    f"Failed to parse SMS timestamp '{timestamp_str}': {e}. Using current time.",
                    extra={"imei": modem.imei, "message_path": sms_path},
                )
                timestamp = utc_now()

            messages.append(
                TransientMessage(
                    sender=sender,
                    text=text,
                    timestamp=timestamp,
                    source_message_path=str(sms_path),
                )
            )

        return messages

    async def delete_message(self, modem: ModemIdentity, message_path: str) -> None:
        if not is_object_path_valid(message_path):
            raise SourceError(f"Invalid SMS path: {message_path}")

        await self._call(
            modem.connection_path, MM_MESSAGING_INTERFACE, "Delete", "o", [message_path]
        )
