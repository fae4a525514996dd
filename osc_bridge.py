"""
OSC Bridge
Outbound track/status events to a VJ receiver and inbound external track
events, both over OSC/UDP via python-osc.

Outbound paths (under the configured prefix, default /vjsync):
    track/title, track/artist, track/genre, track/artwork   (string)
    track/bpm, track/energy, track/danceability            (float)
    track/prompt1 .. track/prompt10                         (string, only when present)
    status, manual, test                                    (string)

Inbound:
    external/track   "song:<TITLE> from:<ARTIST>"
    ping | test      [return_host, return_port] -> pong "Server active"
"""

import asyncio
import socket
from typing import Callable, List, Optional

from pythonosc.dispatcher import Dispatcher
from pythonosc.osc_server import AsyncIOOSCUDPServer
from pythonosc.udp_client import SimpleUDPClient

from logging_config import get_logger
from models import MAX_PROMPTS, Track
from system_utils.helpers import create_tracked_task

logger = get_logger(__name__)

DEFAULT_PREFIX = "/vjsync"
RETRY_DELAY = 5.0  # Seconds between attempts to bind the input port


def _normalize_prefix(prefix: Optional[str]) -> str:
    prefix = (prefix or DEFAULT_PREFIX).strip().rstrip("/")
    if not prefix.startswith("/"):
        prefix = "/" + prefix
    return prefix


def is_valid_endpoint(host: Optional[str], port: Optional[int]) -> bool:
    return bool(host and host.strip()) and isinstance(port, int) and 0 < port <= 65535


def get_local_ip() -> str:
    """Best effort to get the actual LAN IP address."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No data is sent, connecting only selects the outgoing interface
        s.connect(('8.8.8.8', 1))
        return s.getsockname()[0]
    except OSError:
        return '127.0.0.1'
    finally:
        s.close()


def parse_external_track(payload) -> Optional[Track]:
    """
    Parse "song:<TITLE> from:<ARTIST>" into a Track (source "external").

    Returns None for anything that does not split into exactly two parts
    around "from:".
    """
    if not isinstance(payload, str):
        return None
    parts = payload.split("from:")
    if len(parts) != 2:
        return None
    title = parts[0].strip()
    artist = parts[1].strip()
    if title.startswith("song:"):
        title = title[len("song:"):].strip()
    return Track(title=title, artist=artist, source="external")


class OSCPublisher:
    """Sends typed OSC events to one configured receiver."""

    def __init__(self, host: str = "127.0.0.1", port: int = 9000, prefix: str = DEFAULT_PREFIX,
                 client_factory: Callable[..., SimpleUDPClient] = SimpleUDPClient):
        self.host = (host or "").strip()
        self.port = port
        self.prefix = _normalize_prefix(prefix)
        self._client_factory = client_factory
        self._client: Optional[SimpleUDPClient] = None

    def is_configured(self) -> bool:
        return is_valid_endpoint(self.host, self.port)

    def _get_client(self) -> SimpleUDPClient:
        if self._client is None:
            broadcast = self.host.endswith(".255")
            self._client = self._client_factory(self.host, self.port, allow_broadcast=broadcast)
        return self._client

    def address(self, path: str) -> str:
        return f"{self.prefix}/{path.lstrip('/')}"

    def send(self, path: str, value) -> bool:
        """
        Send one message. A failed send is retried once.

        Returns:
            True if the message left the socket
        """
        if not self.is_configured():
            return False
        address = self.address(path)
        for attempt in (1, 2):
            try:
                self._get_client().send_message(address, value)
                return True
            except OSError as e:
                # Recreate the socket for the retry
                self._client = None
                if attempt == 2:
                    logger.warning(f"OSC send to {self.host}:{self.port}{address} failed: {e}")
        return False

    def send_track(self, track: Track) -> None:
        """Send track metadata; prompts only for the slots that are filled."""
        self.send("track/title", track.title or "")
        self.send("track/artist", track.artist or "")
        self.send("track/genre", track.genre or "")
        self.send("track/bpm", float(track.bpm or 0.0))
        self.send("track/energy", float(track.energy or 0.0))
        self.send("track/danceability", float(track.danceability or 0.0))
        self.send("track/artwork", track.artwork_url or "")
        for index, prompt in enumerate(track.prompts[:MAX_PROMPTS], start=1):
            self.send(f"track/prompt{index}", prompt)
        logger.debug(f"OSC track sent: {track} ({len(track.prompts)} prompts)")

    def send_status(self, status: str) -> None:
        self.send("status", status)

    def send_manual(self, text: str) -> None:
        self.send("manual", text)

    def send_ping(self) -> bool:
        return self.send("test", "ping")

    def diagnostics(self) -> str:
        """Human-readable connectivity report for the configured target."""
        lines: List[str] = [
            "=== OSC NETWORK DIAGNOSTIC ===",
            "",
            "CONNECTION PARAMETERS:",
            f"- Target host: {self.host or '(not set)'}",
            f"- Target port: {self.port}",
            f"- Address prefix: {self.prefix}",
            "",
            "LOCAL IP ADDRESS:",
            f"- IP of this device: {get_local_ip()}",
            "",
            "OSC CONNECTION TEST:",
        ]
        ok = self.send_ping()
        lines.append(f"- OSC ping: {'SUCCESS' if ok else 'FAILURE'}")
        lines.append("")
        lines.append("SUGGESTIONS:")
        if ok:
            lines.append("- Ping sent. If nothing arrives, check the receiver's port and address filters")
        else:
            lines.extend([
                "- Check that host and port are set and the receiver is running",
                "- Check that both devices are on the same network",
                "- Check the firewall on the receiving machine",
                "- Try 255.255.255.255 to broadcast on the local network",
            ])
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"<OSCPublisher {self.host}:{self.port} prefix='{self.prefix}'>"


class ExternalTrackListener:
    """
    OSC server delivering externally identified tracks to subscribers.
    Answers ping/test messages carrying a return address with a pong.
    """

    def __init__(self, port: int, prefix: str = DEFAULT_PREFIX, host: str = "0.0.0.0",
                 reply_client_factory: Callable[..., SimpleUDPClient] = SimpleUDPClient):
        self.port = port
        self.host = host
        self.prefix = _normalize_prefix(prefix)
        self._reply_client_factory = reply_client_factory
        self._subscribers: List[Callable[[Track], object]] = []
        self._transport: Optional[asyncio.BaseTransport] = None
        self._start_task: Optional[asyncio.Task] = None

        self.dispatcher = Dispatcher()
        self.dispatcher.map(f"{self.prefix}/external/track", self.handle_track_message)
        self.dispatcher.map(f"{self.prefix}/ping", self.handle_ping)
        self.dispatcher.map(f"{self.prefix}/test", self.handle_ping)
        self.dispatcher.set_default_handler(self.handle_unknown)

    @property
    def is_running(self) -> bool:
        return self._transport is not None

    def subscribe(self, callback: Callable[[Track], object]) -> None:
        self._subscribers.append(callback)

    def handle_track_message(self, address: str, *args) -> None:
        track = parse_external_track(args[0]) if args else None
        if track is None:
            logger.debug(f"Invalid external track message: {args!r}")
            return
        logger.info(f"External track received via OSC: {track}")
        for callback in list(self._subscribers):
            try:
                callback(track)
            except Exception as e:
                logger.error(f"External track subscriber failed: {e}", exc_info=True)

    def handle_ping(self, address: str, *args) -> None:
        logger.info(f"Received {address}, server is active")
        if len(args) < 2 or not isinstance(args[0], str) or not isinstance(args[1], int):
            return
        return_host, return_port = args[0], args[1]
        if not is_valid_endpoint(return_host, return_port):
            return
        try:
            client = self._reply_client_factory(return_host, return_port)
            client.send_message(f"{self.prefix}/pong", "Server active")
        except OSError as e:
            logger.warning(f"Could not answer ping to {return_host}:{return_port}: {e}")

    def handle_unknown(self, address: str, *args) -> None:
        if address.startswith(self.prefix + "/"):
            logger.debug(f"Unhandled OSC message: {address}")
        else:
            logger.debug(f"Ignoring OSC message outside {self.prefix}: {address}")

    async def start(self) -> None:
        """Bind the UDP server. Raises OSError when the port is unavailable."""
        if self._transport is not None:
            return
        server = AsyncIOOSCUDPServer((self.host, self.port), self.dispatcher, asyncio.get_running_loop())
        self._transport, _protocol = await server.create_serve_endpoint()
        logger.info(f"OSC input listening on {self.host}:{self.port} ({self.prefix}/external/track)")

    def start_in_background(self, retry_delay: float = RETRY_DELAY) -> asyncio.Task:
        """Start the server, retrying every retry_delay seconds while the port is in use."""
        if self._start_task is None or self._start_task.done():
            self._start_task = create_tracked_task(self._start_with_retry(retry_delay), name="osc-input-start")
        return self._start_task

    async def _start_with_retry(self, retry_delay: float) -> None:
        while True:
            try:
                await self.start()
                return
            except OSError as e:
                logger.warning(f"Could not start OSC input on port {self.port}: {e} (retrying in {retry_delay:.0f}s)")
                await asyncio.sleep(retry_delay)

    def stop(self) -> None:
        task, self._start_task = self._start_task, None
        if task is not None and not task.done():
            task.cancel()
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
            logger.info("OSC input stopped")
