"""
UDP-based LAN discovery service.

Listens on a well-known port for `tcp://host:port|deviceName` beacons and,
while this device accepts pairings, broadcasts its own address the same way.
"""

import asyncio
import logging
import socket
import time
from typing import AsyncIterator

from config import DISCOVERY_INTERVAL, DISCOVERY_PORT
from discovery.models import DiscoveredPeer, PeerAddress

logger = logging.getLogger(__name__)


def get_local_ip() -> str:
    """Best guess at the LAN address other devices can reach us on."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connecting only picks the outbound interface
        s.connect(("10.255.255.255", 1))
        return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        s.close()


def broadcast_addresses() -> set[str]:
    """Limited broadcast plus a /24 directed broadcast per local interface."""
    addresses = {"255.255.255.255"}
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")
        ips = []
    for ip in ips + [get_local_ip()]:
        parts = ip.split(".")
        if len(parts) == 4 and not ip.startswith("127."):
            parts[3] = "255"
            addresses.add(".".join(parts))
    return addresses


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving discovery beacons."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.service.handle_packet(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class DiscoveryService:
    """Manages LAN device discovery via UDP broadcast."""

    def __init__(
        self,
        port: int = DISCOVERY_PORT,
        bind_host: str = "0.0.0.0",
        interval: float = DISCOVERY_INTERVAL,
    ) -> None:
        self._port = port
        self._bind_host = bind_host
        self._interval = interval
        self._peers: dict[str, DiscoveredPeer] = {}
        self._order: list[DiscoveredPeer] = []
        self._new_peer = asyncio.Event()
        self._generation = 0
        self._running = False
        self._transport: asyncio.DatagramTransport | None = None
        self._broadcast_task: asyncio.Task | None = None
        self._on_peer_discovered: list = []  # callbacks: async def fn(event, peer)
        self._callback_tasks: set[asyncio.Task] = set()
        self._advertised: PeerAddress | None = None

    @property
    def advertised_address(self) -> PeerAddress | None:
        return self._advertised

    @advertised_address.setter
    def advertised_address(self, address: PeerAddress | None) -> None:
        """Set the pairing address to broadcast; None stops advertising."""
        self._advertised = address

    @property
    def running(self) -> bool:
        return self._running

    def on_peer_discovered(self, callback) -> None:
        """Register a callback fired once per newly discovered device."""
        self._on_peer_discovered.append(callback)

    async def start(self) -> None:
        """Start the listener and the beacon broadcaster."""
        if self._running:
            logger.info("Discovery already running")
            return
        logger.info(f"Starting discovery on UDP port {self._port}")

        loop = asyncio.get_running_loop()

        # SO_REUSEADDR must be set before binding so several apps can share
        # the well-known port
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        sock.bind((self._bind_host, self._port))

        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self),
            sock=sock,
        )
        self._transport = transport
        self._running = True
        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        logger.info("Discovery service started")

    async def stop(self) -> None:
        """Stop discovery and forget every peer seen in this session."""
        if self._broadcast_task:
            self._broadcast_task.cancel()
            try:
                await self._broadcast_task
            except asyncio.CancelledError:
                pass
            self._broadcast_task = None
        if self._transport:
            self._transport.close()
            self._transport = None

        self._running = False
        self._peers.clear()
        self._order = []
        self._generation += 1
        self._wake_watchers()
        logger.info("Discovery service stopped")

    @property
    def listening_port(self) -> int:
        if self._transport is None:
            return 0
        return self._transport.get_extra_info("sockname")[1]

    def get_peers(self) -> list[DiscoveredPeer]:
        """Return the peers of this session in discovery order."""
        return list(self._order)

    async def watch(self) -> AsyncIterator[DiscoveredPeer]:
        """
        Yield every discovered peer, oldest first, then wait for new ones.

        The sequence ends when discovery stops; a new `start()` begins a
        fresh sequence.
        """
        generation = self._generation
        index = 0
        while self._running and generation == self._generation:
            while index < len(self._order):
                yield self._order[index]
                index += 1
                if generation != self._generation:
                    return
            event = self._new_peer
            await event.wait()

    def handle_packet(self, data: bytes, addr: tuple[str, int]) -> None:
        """Parse one beacon; anything malformed is dropped."""
        try:
            address = PeerAddress.parse(data.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return

        if self._advertised is not None and address == self._advertised:
            return
        self.update_peer(address)

    def update_peer(self, address: PeerAddress) -> DiscoveredPeer:
        """Add a peer, or refresh it if its device name is already known."""
        now = time.time()
        known = self._peers.get(address.device_name)
        if known is not None:
            known.last_seen = now
            return known

        peer = DiscoveredPeer(address=address, first_seen=now, last_seen=now)
        self._peers[address.device_name] = peer
        self._order.append(peer)
        logger.info(f"Discovered peer: {peer.device_name} ({address.host}:{address.port})")
        self._wake_watchers()

        for cb in self._on_peer_discovered:
            task = asyncio.ensure_future(cb("peer_discovered", peer))
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)
        return peer

    def _wake_watchers(self) -> None:
        self._new_peer.set()
        self._new_peer = asyncio.Event()

    async def _broadcast_loop(self) -> None:
        """Periodically broadcast our pairing address while one is set."""
        while True:
            address = self._advertised
            if address is not None and self._transport is not None:
                data = address.to_uri().encode("ascii", errors="replace")
                for target in broadcast_addresses():
                    try:
                        self._transport.sendto(data, (target, self._port))
                    except OSError as e:
                        # Some interfaces refuse broadcast
                        logger.debug(f"Broadcast to {target} failed: {e}")

            await asyncio.sleep(self._interval)
