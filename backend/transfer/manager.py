"""
Transfer Manager: owns the pairing and its transfers.

Holds the TLS listener, the single active session, the transfer state
machine and the history of finished files, and reports everything that
happens through event callbacks.
"""

import asyncio
import logging
import os
import ssl
from pathlib import Path

from config import DEFAULT_SAVE_DIR, DEVICE_NAME, MAX_FILE_SIZE, TRANSFER_STALL_TIMEOUT
from discovery.models import PeerAddress
from discovery.service import get_local_ip
from transfer.errors import (
    SessionError,
    SourceReadError,
    TransferBusyError,
    TransferError,
)
from transfer.machine import TransferStateMachine
from transfer.models import (
    CompletedFileRecord,
    FileSource,
    SessionRole,
    TransferDescriptor,
    TransferDirection,
)
from transfer.protocol import ConnectMessage
from transfer.router import ControlMessageRouter
from transfer.session import SecuredSession

logger = logging.getLogger(__name__)


class TransferManager:
    """Manages the paired session and its file transfers."""

    def __init__(
        self,
        server_ssl: ssl.SSLContext | None = None,
        client_ssl: ssl.SSLContext | None = None,
        device_name: str = DEVICE_NAME,
        save_dir: str = DEFAULT_SAVE_DIR,
        stall_timeout: float | None = TRANSFER_STALL_TIMEOUT,
    ) -> None:
        self.server_ssl = server_ssl
        self.client_ssl = client_ssl
        self.device_name = device_name
        self._save_dir = save_dir
        self._stall_timeout = stall_timeout
        self._machine = TransferStateMachine(save_dir)
        self._server: asyncio.Server | None = None
        self._session: SecuredSession | None = None
        self._session_task: asyncio.Task | None = None
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._background_tasks: set[asyncio.Task] = set()
        self.sent_files: list[CompletedFileRecord] = []
        self.received_files: list[CompletedFileRecord] = []

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path
        self._machine.save_dir = path

    @property
    def machine(self) -> TransferStateMachine:
        return self._machine

    @property
    def session(self) -> SecuredSession | None:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._session is not None and self._session.is_connected

    @property
    def connected_device(self) -> str | None:
        if self._session is None:
            return None
        return self._session.connected_device_name

    @property
    def listening_port(self) -> int:
        if self._server is None or not self._server.sockets:
            return 0
        return self._server.sockets[0].getsockname()[1]

    @property
    def pairing_address(self) -> PeerAddress | None:
        """Our own address, as shown in the QR code and broadcast."""
        if not self.listening_port:
            return None
        return PeerAddress(
            host=get_local_ip(), port=self.listening_port, device_name=self.device_name
        )

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def _notify(self, kind: str, message: str) -> None:
        await self._emit("notification", {"type": kind, "message": message})

    def _spawn(self, coro) -> None:
        """Run `coro` in the background, holding a reference until it ends."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # --- Server role ---

    async def start_server(self, port: int, host: str = "0.0.0.0") -> None:
        """Start the TLS listener. A no-op if one is already running."""
        if self._server is not None:
            logger.info("Server already running")
            return
        if self.server_ssl is None:
            raise SessionError("No server TLS context configured")

        self._server = await asyncio.start_server(
            self._handle_incoming_connection, host, port, ssl=self.server_ssl
        )
        logger.info(f"Server running on {host}:{self.listening_port}")

    async def _handle_incoming_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        session = SecuredSession(reader, writer, SessionRole.SERVER)
        if self._session is not None:
            logger.warning(
                f"Refusing connection from {session.peername}: already paired "
                f"with {self.connected_device or 'a pending peer'}"
            )
            await session.close()
            return

        logger.info(f"Client connected: {session.peername}")
        self._session = session
        self._session_task = asyncio.current_task()
        await self._serve(session)

    # --- Client role ---

    async def connect(self, address: str | PeerAddress) -> None:
        """Dial a `tcp://host:port|deviceName` address."""
        if isinstance(address, str):
            address = PeerAddress.parse(address)
        await self.connect_to_server(address.host, address.port, address.device_name)

    async def connect_to_server(self, host: str, port: int, device_name: str) -> None:
        """Open a client session and introduce ourselves."""
        if self._session is not None:
            raise SessionError(f"Already paired with {self.connected_device}")
        if self.client_ssl is None:
            raise SessionError("No client TLS context configured")

        try:
            session = await SecuredSession.dial(host, port, self.client_ssl)
        except SessionError as e:
            logger.error(str(e))
            await self._notify("error", f"Could not connect to {device_name}")
            raise

        self._session = session
        session.mark_connected(device_name)
        try:
            await session.send(ConnectMessage(device_name=self.device_name))
        except SessionError:
            await self._teardown(session)
            raise

        await self._emit("connection_state", {
            "connected": True,
            "device_name": device_name,
            "role": session.role.value,
        })
        self._session_task = asyncio.create_task(self._serve(session))

    # --- Session lifecycle ---

    async def _serve(self, session: SecuredSession) -> None:
        router = ControlMessageRouter(
            session,
            self._machine,
            emit=self._emit,
            on_receive_started=self._track_receive,
            stall_timeout=self._stall_timeout,
        )
        try:
            await router.run()
        except SessionError as e:
            logger.error(f"Session with {session.peername} failed: {e}")
            await self._notify("error", f"Connection lost: {e}")
        finally:
            await self._teardown(session)

    async def _teardown(self, session: SecuredSession) -> None:
        """Close a session and drop every in-flight transfer."""
        if self._session is not session:
            await session.close()
            return
        self._session = None
        self._session_task = None
        self._machine.reset()
        await session.close()
        logger.info("Connection closed")
        await self._emit("connection_state", {
            "connected": False,
            "device_name": session.connected_device_name,
            "role": session.role.value,
        })

    async def disconnect(self) -> None:
        """Close the session and stop listening."""
        session, task = self._session, self._session_task
        if session is not None:
            await self._teardown(session)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self._machine.reset()

    async def stop(self) -> None:
        await self.disconnect()
        logger.info("Transfer manager stopped")

    # --- Transfers ---

    async def send_file(self, path: str, mime_tag: str = "file") -> TransferDescriptor:
        """
        Announce a file to the peer and let the ack loop stream it.

        Returns once the transfer is announced; the record lands in
        `sent_files` when the last chunk is sent.
        """
        session = self._session
        if session is None or session.closed:
            raise SessionError("Not connected to any device")
        if not session.is_connected:
            raise SessionError("Peer has not completed the handshake yet")
        if self._machine.sending:
            await self._notify("warning", "Wait for the current file to be sent!")
            raise TransferBusyError("A file is already being sent")

        try:
            size = await asyncio.to_thread(os.path.getsize, path)
            if size > MAX_FILE_SIZE:
                await self._notify("error", f"'{os.path.basename(path)}' is too large")
                raise SourceReadError(
                    f"'{path}' is {size} bytes, the limit is {MAX_FILE_SIZE}"
                )
            data = await asyncio.to_thread(Path(path).read_bytes)
        except OSError as e:
            logger.error(f"Could not read '{path}': {e}")
            await self._notify("error", f"Could not read '{os.path.basename(path)}'")
            raise SourceReadError(f"Could not read '{path}': {e}") from e

        source = FileSource(
            path=path, name=os.path.basename(path), size=len(data), mime_tag=mime_tag
        )
        try:
            outbound, announcement = self._machine.start_send(source, data)
        except TransferBusyError:
            await self._notify("warning", "Wait for the current file to be sent!")
            raise

        self._track(outbound.completion, TransferDirection.SENDING)
        await self._emit("transfer_started", {
            "direction": TransferDirection.SENDING.value,
            "file": outbound.descriptor.model_dump(mode="json"),
        })
        await session.send(announcement)
        return outbound.descriptor

    def _track_receive(self, inbound) -> None:
        self._track(inbound.completion, TransferDirection.RECEIVING)

    def _track(self, completion: asyncio.Future, direction: TransferDirection) -> None:
        """Persist the record once the state machine resolves a transfer."""

        def _done(future: asyncio.Future) -> None:
            if future.cancelled():
                logger.info(f"{direction.value.capitalize()} transfer abandoned")
                return
            error = future.exception()
            if error is not None:
                message = str(error) if isinstance(error, TransferError) else repr(error)
                self._spawn(self._notify("error", message))
                return
            record: CompletedFileRecord = future.result()
            history = (
                self.sent_files
                if direction == TransferDirection.SENDING
                else self.received_files
            )
            history.append(record)
            verb = "sent" if direction == TransferDirection.SENDING else "received"
            self._spawn(self._emit("transfer_completed", record.model_dump(mode="json")))
            self._spawn(self._notify("success", f"'{record.name}' {verb} successfully!"))

        completion.add_done_callback(_done)
