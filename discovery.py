"""
mDNS/DNS-SD advertisement for the OTA receiver.

Uploader tools (the Arduino IDE, PlatformIO, espota) browse for
`_arduino._tcp` services and read the TXT record to decide whether to ask
for a password. This module publishes that record with python-zeroconf.
"""

import socket
from typing import Dict, Optional

from zeroconf import ServiceInfo
from zeroconf.asyncio import AsyncZeroconf


SERVICE_TYPE = "_arduino._tcp.local."
DEFAULT_BOARD = "python"


# Picks the address other hosts on the LAN would use to reach this machine
def local_address() -> str:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connect() only selects the outbound interface.
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return socket.gethostbyname(socket.gethostname())
    finally:
        sock.close()


class ServiceAdvertiser:
    """Publishes one `_arduino._tcp` record and retracts it on stop().

    stop() is idempotent and safe to call when start() never ran or failed
    part way through.
    """

    def __init__(
        self,
        name: str,
        port: int,
        auth_required: bool,
        board: str = DEFAULT_BOARD,
        address: Optional[str] = None,
    ):
        self.name = name
        self.port = port
        self.auth_required = auth_required
        self.board = board
        self.address = address
        self._zeroconf: Optional[AsyncZeroconf] = None
        self._info: Optional[ServiceInfo] = None

    @property
    def active(self) -> bool:
        return self._info is not None

    def properties(self) -> Dict[str, str]:
        return {
            "board": self.board,
            "tcp_check": "no",
            "ssh_upload": "no",
            "auth_upload": "yes" if self.auth_required else "no",
        }

    def build_info(self) -> ServiceInfo:
        address = self.address or local_address()
        host = socket.gethostname().split(".")[0] or "ota"
        return ServiceInfo(
            SERVICE_TYPE,
            f"{self.name}.{SERVICE_TYPE}",
            port=self.port,
            properties=self.properties(),
            server=f"{host}.local.",
            parsed_addresses=[address],
        )

    async def start(self) -> None:
        if self._zeroconf is not None:
            return
        info = self.build_info()
        self._zeroconf = AsyncZeroconf()
        # The first await finishes probing, the second waits for the announcements.
        announce = await self._zeroconf.async_register_service(info, allow_name_change=True)
        await announce
        self._info = info

    async def stop(self) -> None:
        zc = self._zeroconf
        if zc is None:
            return
        self._zeroconf = None
        try:
            if self._info is not None:
                await zc.async_unregister_all_services()
        finally:
            self._info = None
            await zc.async_close()
