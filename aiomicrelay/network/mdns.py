"""mDNS advertisement of a serving session's control channel."""

from __future__ import annotations

import logging

from zeroconf import NonUniqueNameException
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from aiomicrelay.util import get_local_ip

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_aiomicrelay._tcp.local."


class MdnsAdvertiser:
    """
    Advertises a control channel as ``_aiomicrelay._tcp`` via zeroconf.

    The broadcast discovery protocol stays the primary way to find peers; this
    only lets generic mDNS browsers see the host too.
    """

    def __init__(self, device_id: str, device_name: str) -> None:
        """
        Initialize the advertiser.

        Args:
            device_id: Unique identifier, used as the mDNS instance name.
            device_name: Friendly name published in the TXT record.
        """
        self._device_id = device_id
        self._device_name = device_name
        self._zc: AsyncZeroconf | None = None
        self._service: AsyncServiceInfo | None = None

    @property
    def advertising(self) -> bool:
        """Return True while a service is registered."""
        return self._service is not None

    async def start(
        self, control_port: int, audio_port: int, addresses: list[str] | None = None
    ) -> None:
        """Register the service. Calling this while advertising re-registers it."""
        await self.stop()
        if addresses is None:
            local_ip = get_local_ip()
            if local_ip is None:
                logger.warning("Could not determine local IP address, mDNS may not work properly")
                addresses = ["127.0.0.1"]
            else:
                addresses = [local_ip]

        self._zc = AsyncZeroconf()
        service = AsyncServiceInfo(
            type_=SERVICE_TYPE,
            name=f"{self._device_id}.{SERVICE_TYPE}",
            server=f"{self._device_id}.local.",
            parsed_addresses=addresses,
            port=control_port,
            properties={"name": self._device_name, "audio_port": str(audio_port)},
        )
        try:
            await self._zc.async_register_service(service)
        except NonUniqueNameException:
            logger.error("Device with identical id %s present in the local network!", self._device_id)
            await self.stop()
            return
        self._service = service
        logger.info("mDNS advertising %s on control port %d", self._device_id, control_port)

    async def stop(self) -> None:
        """Unregister the service and close zeroconf."""
        if self._zc is None:
            return
        try:
            if self._service is not None:
                await self._zc.async_unregister_service(self._service)
        finally:
            await self._zc.async_close()
            self._zc = None
            self._service = None
