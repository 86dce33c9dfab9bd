"""
Receiving endpoint for the ArduinoOTA network update protocol.

This module provides:
- Session state tracking (one transfer at a time: idle, waiting, updating, error)
- The UDP command channel on the advertised port
- Optional challenge-response authentication (MD5 over secret:nonce:cnonce)
- The TCP data leg: dial back to the uploader, echo every chunk length,
  reply OK once the announced size has arrived
- Four event hooks (start, progress, error, end) through which firmware
  bytes leave the receiver; nothing is ever written to flash here

NOTES:
- request_abort() is cooperative. It only marks the session; the next I/O
  event (dial timer, connect, data chunk or connection loss) tears the data
  leg down. A connection that goes silent stays open until one of those
  happens or shutdown() runs.
- The waiting state has no timeout and no retry cap: an uploader that keeps
  sending wrong responses holds the receiver there.
"""

import asyncio
import enum
import hashlib
import hmac
import os
import socket
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple

from discovery import DEFAULT_BOARD, ServiceAdvertiser
from protocol import (
    REPLY_AUTH_FAILED,
    REPLY_OK,
    AuthResponse,
    Command,
    MalformedMessage,
    UpdateCommand,
    build_auth_challenge,
)


DEFAULT_NAME = "Python OTA"
DEFAULT_PORT = 8266
# Gives the uploader time to handle the UDP "OK" before it expects the TCP dial.
CONNECT_DELAY_SECONDS = 0.1

WIRE_TRACE_ENABLED = False
WIRE_TRACE_ROLE = "OTA"
COLOR_ENABLED = os.environ.get("NO_COLOR") is None

ANSI_RESET = "\x1b[0m"
ANSI_DIM = "\x1b[2m"
ANSI_BOLD = "\x1b[1m"
ANSI_RED = "\x1b[91m"
ANSI_GREEN = "\x1b[92m"
ANSI_YELLOW = "\x1b[93m"
ANSI_CYAN = "\x1b[96m"
ANSI_WHITE = "\x1b[97m"
LOG_LINE = "=" * 44


class OtaState(enum.Enum):
    IDLE = "idle"
    WAITING = "waiting"
    UPDATING = "updating"
    ERROR = "error"


# Stores one transfer; created on a valid update command and dropped on reset
@dataclass
class Session:
    remote_address: str
    remote_udp_port: int
    remote_tcp_port: int
    total_size: int
    content_digest: str
    kind: Command = Command.FLASH
    transferred: int = 0
    nonce: Optional[str] = None

    @property
    def remote(self) -> Tuple[str, int]:
        return self.remote_address, self.remote_udp_port


# Defines the base error type for the receiver
class OTAError(Exception):
    pass


class AuthFailure(OTAError):
    pass


class TransportError(OTAError):
    pass


class AbortedByCaller(OTAError):
    pass


# Applies optional ANSI styles when terminal coloring is enabled
def _paint(text: str, *styles: str) -> str:
    if not COLOR_ENABLED or not styles:
        return text
    return "".join(styles) + text + ANSI_RESET


# Emits verbose trace logs for debugging internal flow
def _trace(verbose: bool, message: str) -> None:
    if verbose:
        print(_paint(f"[ota] {message}", ANSI_DIM, ANSI_CYAN))


# Emits errors that are always shown
def _error_log(message: str) -> None:
    print(_paint(f"[ota] {message}", ANSI_RED))


# Emits security-related pass/fail logs
def _security_log(message: str, ok: bool = True) -> None:
    color = ANSI_GREEN if ok else ANSI_RED
    print(_paint(f"[SECURITY] {message}", ANSI_BOLD, color))


# Enables wire tracing of every datagram received and sent
def set_wire_trace(enabled: bool, role: str = "OTA") -> None:
    global WIRE_TRACE_ENABLED, WIRE_TRACE_ROLE
    WIRE_TRACE_ENABLED = enabled
    WIRE_TRACE_ROLE = role.upper()


# Prints the runtime parameters of a receiver once it is listening
def log_runtime(receiver: "OTAReceiver") -> None:
    if not WIRE_TRACE_ENABLED:
        return
    auth = "md5-challenge" if receiver.auth_required else "disabled"
    print()
    print(_paint(f"=== OTA Receiver ({WIRE_TRACE_ROLE}) ===", ANSI_CYAN))
    print(
        _paint(
            f"[RUNTIME] name={receiver.name!r} port={receiver.port} "
            f"connect_delay={receiver.connect_delay:.2f}s authentication={auth}",
            ANSI_WHITE,
        )
    )
    print(_paint(LOG_LINE, ANSI_DIM))


# Hex MD5 of a text value, the only hash the protocol uses
def md5_hex(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Credentials:
    """Shared upload secret, kept only as its MD5 hex digest."""

    secret_hash: str

    @classmethod
    def from_password(cls, password: str, is_md5: bool = False) -> "Credentials":
        if is_md5:
            return cls(password.lower())
        return cls(md5_hex(password))


class AuthNegotiator:
    """Issues challenge nonces and checks uploader responses.

    Issued nonces are remembered for the whole process, shared by every
    negotiator, so no two sessions are ever challenged with the same value.
    """

    _issued: Set[str] = set()

    def __init__(self, credentials: Credentials):
        self.credentials = credentials

    def issue_nonce(self) -> str:
        while True:
            nonce = hashlib.md5(os.urandom(16)).hexdigest()
            if nonce not in self._issued:
                self._issued.add(nonce)
                return nonce

    def expected_response(self, nonce: str, cnonce: str) -> str:
        return md5_hex(f"{self.credentials.secret_hash}:{nonce}:{cnonce}")

    def verify(self, nonce: str, reply: AuthResponse) -> None:
        expected = self.expected_response(nonce, reply.cnonce)
        if not hmac.compare_digest(expected.encode("ascii"), reply.response.encode("ascii")):
            raise AuthFailure("Challenge response does not match")


StartHandler = Callable[[int], None]
ProgressHandler = Callable[[int, int, int, bytes], None]
ErrorHandler = Callable[[OTAError], None]
EndHandler = Callable[[], None]


class EventSink:
    """Four optional handler slots: start, progress, error and end.

    Every slot can be set once, and only before the receiver starts
    listening. A handler that raises is reported and does not disturb the
    session state.
    """

    SLOTS = ("start", "progress", "error", "end")

    def __init__(self):
        self._handlers: Dict[str, Callable[..., None]] = {}
        self._sealed = False

    def attach(self, slot: str, handler: Callable[..., None]) -> None:
        if slot not in self.SLOTS:
            raise ValueError(f"Unknown event slot: {slot}")
        if self._sealed:
            raise RuntimeError(f"Cannot attach {slot} handler after the receiver started listening")
        if slot in self._handlers:
            raise RuntimeError(f"A {slot} handler is already attached")
        self._handlers[slot] = handler

    def seal(self) -> None:
        self._sealed = True

    def _emit(self, slot: str, *args) -> None:
        handler = self._handlers.get(slot)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as exc:
            _error_log(f"{slot} handler raised {type(exc).__name__}: {exc}")

    def start(self, size: int) -> None:
        self._emit("start", size)

    def progress(self, chunk_size: int, transferred: int, total: int, chunk: bytes) -> None:
        self._emit("progress", chunk_size, transferred, total, chunk)

    def error(self, err: OTAError) -> None:
        self._emit("error", err)

    def end(self) -> None:
        self._emit("end")


# Receives command datagrams on the advertised UDP port
class CommandProtocol(asyncio.DatagramProtocol):
    def __init__(self, receiver: "OTAReceiver"):
        self.receiver = receiver

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.receiver._attach_command_transport(transport)

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.receiver.receive(data, addr)

    def error_received(self, exc: Exception) -> None:
        self.receiver._command_error(exc)


# Streams one session's payload from the uploader on the data leg
class TransferProtocol(asyncio.Protocol):
    def __init__(self, receiver: "OTAReceiver", session: Session):
        self.receiver = receiver
        self.session = session
        self.transport: Optional[asyncio.Transport] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport
        sock = transport.get_extra_info("socket")
        if sock is not None:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self.receiver._transfer_connected(self.session, transport)

    def data_received(self, data: bytes) -> None:
        self.receiver._transfer_chunk(self.session, self.transport, data)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.receiver._transfer_lost(self.session, exc)


class OTAReceiver:
    """Emulates an OTA-capable device for uploader tools.

    Example:
        receiver = OTAReceiver("bench-node", 8266, password="secret")
        receiver.on_start(open_file).on_progress(write_chunk).on_end(close_file)
        await receiver.start()
        ...
        await receiver.shutdown()
    """

    def __init__(
        self,
        name: str = DEFAULT_NAME,
        port: int = DEFAULT_PORT,
        password: Optional[str] = None,
        password_is_md5: bool = False,
        host: str = "0.0.0.0",
        connect_delay: float = CONNECT_DELAY_SECONDS,
        board: str = DEFAULT_BOARD,
        advertise: bool = True,
        advertiser: Optional[ServiceAdvertiser] = None,
        verbose: bool = False,
    ):
        self.name = name
        self.port = port
        self.host = host
        self.connect_delay = connect_delay
        self.board = board
        self.advertise = advertise
        self.verbose = verbose
        self.auth: Optional[AuthNegotiator] = None
        if password:
            self.auth = AuthNegotiator(Credentials.from_password(password, password_is_md5))
        self.events = EventSink()
        self._advertiser = advertiser
        self._state = OtaState.IDLE
        self._session: Optional[Session] = None
        self._udp: Optional[asyncio.DatagramTransport] = None
        self._tcp: Optional[asyncio.Transport] = None
        self._dial_timer: Optional[asyncio.TimerHandle] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def state(self) -> OtaState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def auth_required(self) -> bool:
        return self.auth is not None

    def on_start(self, handler: StartHandler) -> "OTAReceiver":
        self.events.attach("start", handler)
        return self

    def on_progress(self, handler: ProgressHandler) -> "OTAReceiver":
        self.events.attach("progress", handler)
        return self

    def on_error(self, handler: ErrorHandler) -> "OTAReceiver":
        self.events.attach("error", handler)
        return self

    def on_end(self, handler: EndHandler) -> "OTAReceiver":
        self.events.attach("end", handler)
        return self

    async def start(self) -> "OTAReceiver":
        """Bind the command socket and publish the mDNS record."""
        _trace(self.verbose, f"start(name={self.name}, port={self.port})")
        self._closed = False
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(
            lambda: CommandProtocol(self),
            local_addr=(self.host, self.port),
        )
        if self.advertise:
            if self._advertiser is None:
                self._advertiser = ServiceAdvertiser(
                    self.name,
                    self.port,
                    self.auth_required,
                    board=self.board,
                    address=None if self.host in ("", "0.0.0.0") else self.host,
                )
            _trace(self.verbose, f"mdns.publish({self._advertiser.properties()})")
            await self._advertiser.start()
        log_runtime(self)
        return self

    async def shutdown(self) -> None:
        """Retract the advertisement and release every socket; safe to repeat."""
        if self._closed:
            return
        self._closed = True
        _trace(self.verbose, "shutdown()")
        self._reset()
        if self._udp is not None:
            self._udp.close()
            self._udp = None
        if self._advertiser is not None:
            await self._advertiser.stop()

    def request_abort(self) -> None:
        """Mark the running transfer as aborted; the next I/O event tears it down."""
        if self._state is not OtaState.UPDATING:
            _trace(self.verbose, f"abort ignored in state {self._state.value}")
            return
        self._set_state(OtaState.ERROR)

    # Called by CommandProtocol once the UDP socket is bound
    def _attach_command_transport(self, transport: asyncio.BaseTransport) -> None:
        self._udp = transport
        sockname = transport.get_extra_info("sockname")
        if sockname:
            self.port = sockname[1]
        self.events.seal()
        _trace(self.verbose, f"socket.bind(address={self.host}, port={self.port})")

    def _set_state(self, state: OtaState) -> None:
        if state is not self._state:
            _trace(self.verbose, f"state({self._state.value} => {state.value})")
        self._state = state

    # Drops the current session and any data-leg resources, back to idle
    def _reset(self, reason: Optional[OTAError] = None) -> None:
        if reason is not None:
            _trace(self.verbose, f"reset: {reason}")
        if self._dial_timer is not None:
            self._dial_timer.cancel()
            self._dial_timer = None
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None
        if self._tcp is not None:
            self._tcp.abort()
            self._tcp = None
        self._session = None
        self._set_state(OtaState.IDLE)

    # Reports a data-leg failure to the sink and returns to idle
    def _fail(self, err: TransportError) -> None:
        _error_log(str(err))
        self.events.error(err)
        self._reset()

    def _send(self, session: Session, payload: bytes) -> None:
        if self._udp is None:
            return
        if WIRE_TRACE_ENABLED:
            print(f"[{WIRE_TRACE_ROLE}][SEND] to={session.remote}, {payload!r}")
        self._udp.sendto(payload, session.remote)

    def receive(self, datagram: bytes, addr: Tuple[str, int]) -> None:
        """Dispatch one command datagram according to the current state."""
        if WIRE_TRACE_ENABLED:
            print(f"[{WIRE_TRACE_ROLE}][RECV] from={addr}, {datagram!r}")
        if self._state is OtaState.IDLE:
            self._receive_idle(datagram, addr)
        elif self._state is OtaState.WAITING:
            self._receive_waiting(datagram, addr)
        else:
            _trace(self.verbose, f"busy ({self._state.value}); dropped datagram from {addr}")

    def _receive_idle(self, datagram: bytes, addr: Tuple[str, int]) -> None:
        try:
            command = UpdateCommand.decode(datagram)
        except MalformedMessage as exc:
            _error_log(f"receive(idle, invalid data): {exc}")
            return

        session = Session(
            remote_address=addr[0],
            remote_udp_port=addr[1],
            remote_tcp_port=command.tcp_port,
            total_size=command.size,
            content_digest=command.digest,
            kind=command.kind,
        )
        self._session = session
        _trace(
            self.verbose,
            f"update request kind={command.kind.name.lower()} size={command.size} "
            f"md5={command.digest} from={addr}",
        )

        if self.auth is not None:
            session.nonce = self.auth.issue_nonce()
            self._set_state(OtaState.WAITING)
            self._send(session, build_auth_challenge(session.nonce))
            _security_log(f"challenge issued to {session.remote_address}")
        else:
            self._run_update(session)

    def _receive_waiting(self, datagram: bytes, addr: Tuple[str, int]) -> None:
        session = self._session
        try:
            reply = AuthResponse.decode(datagram)
        except MalformedMessage as exc:
            _error_log(f"receive(waiting, invalid data): {exc}")
            self._reset()
            return

        try:
            self.auth.verify(session.nonce, reply)
        except AuthFailure as exc:
            _security_log(f"authentication failed: {exc}", ok=False)
            self._send(session, REPLY_AUTH_FAILED)
            return

        _security_log("authentication passed")
        session.nonce = None
        self._run_update(session)

    # Sends the go-ahead, fires on_start and schedules the dial-back
    def _run_update(self, session: Session) -> None:
        _trace(self.verbose, f"run_update(size={session.total_size})")
        self._set_state(OtaState.UPDATING)
        self._send(session, REPLY_OK)
        self.events.start(session.total_size)
        if self._session is not session:
            return
        loop = asyncio.get_running_loop()
        self._dial_timer = loop.call_later(self.connect_delay, self._dial, session)

    def _dial(self, session: Session) -> None:
        self._dial_timer = None
        if self._session is not session:
            return
        if self._state is OtaState.ERROR:
            self._reset(AbortedByCaller("aborted before the data connection was opened"))
            return
        _trace(self.verbose, f"connect({session.remote_address}:{session.remote_tcp_port})")
        self._connect_task = asyncio.get_running_loop().create_task(self._connect(session))

    async def _connect(self, session: Session) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.create_connection(
                lambda: TransferProtocol(self, session),
                session.remote_address,
                session.remote_tcp_port,
            )
        except OSError as exc:
            if self._session is session:
                self._connect_task = None
                self._fail(
                    TransportError(
                        f"Cannot connect to {session.remote_address}:{session.remote_tcp_port}: {exc}"
                    )
                )

    def _transfer_connected(self, session: Session, transport: asyncio.Transport) -> None:
        if self._session is not session:
            transport.abort()
            return
        self._tcp = transport
        if self._state is OtaState.ERROR:
            self._reset(AbortedByCaller("aborted while the data connection was opening"))

    def _transfer_chunk(self, session: Session, transport: asyncio.Transport, chunk: bytes) -> None:
        if self._session is not session:
            transport.abort()
            return

        if self._state is OtaState.UPDATING:
            size = len(chunk)
            if session.transferred + size > session.total_size:
                self._fail(
                    TransportError(
                        f"Received {session.transferred + size} bytes, "
                        f"more than the announced {session.total_size}"
                    )
                )
                return
            session.transferred += size
            transport.write(str(size).encode("ascii"))
            self.events.progress(size, session.transferred, session.total_size, chunk)

            if session.transferred == session.total_size:
                _trace(self.verbose, f"run_update(transferred={session.transferred})")
                transport.write(REPLY_OK)
                transport.close()
                self._tcp = None
                self.events.end()
                if self._session is session:
                    self._reset()
                return

        if self._state is OtaState.ERROR and self._session is session:
            self._reset(AbortedByCaller(f"aborted after {session.transferred} bytes"))

    def _transfer_lost(self, session: Session, exc: Optional[Exception]) -> None:
        if self._session is not session:
            return
        self._tcp = None
        if self._state is OtaState.ERROR:
            self._reset(AbortedByCaller("data connection closed after abort"))
            return
        if exc is None:
            message = (
                f"Uploader closed the data connection after "
                f"{session.transferred}/{session.total_size} bytes"
            )
        else:
            message = f"Data connection failed: {exc}"
        self._fail(TransportError(message))

    def _command_error(self, exc: Exception) -> None:
        _error_log(f"command socket error: {exc}")
        if self._state is OtaState.UPDATING:
            self.events.error(TransportError(f"Command socket error: {exc}"))
            self._reset()
        elif self._state is OtaState.WAITING:
            self._reset()
