"""Network status collaborators consumed by the upload queue engine."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fieldsync.sync.uploader import AssetUploader


class ConnectionType(str, Enum):
    """Kind of network connection the device is on."""

    none = "none"
    wifi = "wifi"
    cellular = "cellular"
    ethernet = "ethernet"
    unknown = "unknown"


class NetworkStatus(ABC):
    """Source of connectivity information.

    Both methods may raise (e.g. permission denied); callers decide how to
    treat a failed check.
    """

    @abstractmethod
    async def is_online(self) -> bool:
        """Return True if the device currently has connectivity."""

    @abstractmethod
    async def connection_type(self) -> ConnectionType:
        """Return the current connection type."""


class StaticNetworkStatus(NetworkStatus):
    """Connectivity driven by explicit flags (CLI overrides, embedding apps, tests)."""

    def __init__(
        self,
        online: bool = True,
        connection: ConnectionType = ConnectionType.wifi,
    ) -> None:
        self.online = online
        self.connection = connection

    async def is_online(self) -> bool:
        return self.online

    async def connection_type(self) -> ConnectionType:
        if not self.online:
            return ConnectionType.none
        return self.connection


class ServerProbeNetworkStatus(NetworkStatus):
    """Treats the device as online when the upload server answers its health probe.

    The connection type cannot be observed from a probe, so a configured
    value is reported while online.
    """

    def __init__(
        self,
        uploader: "AssetUploader",
        assumed_connection: ConnectionType = ConnectionType.wifi,
    ) -> None:
        self._uploader = uploader
        self._assumed_connection = assumed_connection

    async def is_online(self) -> bool:
        return await self._uploader.check_server()

    async def connection_type(self) -> ConnectionType:
        if not await self.is_online():
            return ConnectionType.none
        return self._assumed_connection
