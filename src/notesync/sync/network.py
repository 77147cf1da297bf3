"""
Network state tracking: online/offline and connection class.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

logger = logging.getLogger(__name__)

DEFAULT_CONNECTIVITY_URL = "https://www.gstatic.com/generate_204"

ConnectivityListener = Callable[[bool], Union[None, Awaitable[None]]]


class ConnectionType(str, Enum):
    WIFI = "wifi"
    ETHERNET = "ethernet"
    CELLULAR = "cellular"
    UNKNOWN = "unknown"


class NetworkMonitor:
    """
    Holds the current connectivity state and notifies subscribers on change.

    The host application feeds OS network events through set_online() and
    set_connection(); check_connectivity() can refresh the online flag actively.
    """

    def __init__(
        self,
        is_online: bool = True,
        connection_type: ConnectionType = ConnectionType.UNKNOWN,
        save_data: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._online = is_online
        self.connection_type = connection_type
        self.save_data = save_data
        self._http = http_client
        self._listeners: List[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def is_unmetered(self) -> bool:
        """False on cellular or when the user asked to save data."""
        if self.save_data:
            return False
        return self.connection_type != ConnectionType.CELLULAR

    def set_connection(self, connection_type: ConnectionType, save_data: bool = False) -> None:
        self.connection_type = ConnectionType(connection_type)
        self.save_data = save_data

    async def set_online(self, online: bool, notify: bool = True) -> None:
        """Update the online flag and notify subscribers if it changed."""
        if online == self._online:
            return
        self._online = online
        logger.info(f"Network is now {'online' if online else 'offline'}")
        if not notify:
            return
        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}")

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def check_connectivity(self, url: str = DEFAULT_CONNECTIVITY_URL, timeout: float = 5.0) -> bool:
        """
        Check reachability with a HEAD request and update the online flag.

        Returns:
            True if the URL answered
        """
        try:
            if self._http is not None:
                response = await self._http.head(url, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.head(url)
            online = response.status_code < 500
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.debug(f"Connectivity check to {url} failed: {e}")
            online = False

        await self.set_online(online)
        return online

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_online": self._online,
            "connection_type": self.connection_type.value,
            "save_data": self.save_data,
        }
