"""HTTP/2-over-TLS listener that serves an ASGI app.

One asyncio task reads each connection and feeds an h2 state machine; every
request stream runs the app in its own task. Inbound DATA is acknowledged as
the app consumes it and outbound DATA waits on the peer's windows, so both
directions are paced by the transport.
"""

import asyncio
import logging
from typing import Dict, Optional, Set, Tuple
from urllib.parse import unquote

import h2.config
import h2.connection
import h2.events
import h2.exceptions
import h2.settings
from h2.errors import ErrorCodes

from .config import ServerConfig

logger = logging.getLogger(__name__)

# Connection-specific headers are illegal in HTTP/2 (RFC 7540 Section 8.1.2.2).
CONNECTION_HEADERS = {b"connection", b"keep-alive", b"proxy-connection", b"transfer-encoding", b"upgrade"}

END_OF_BODY = object()
DISCONNECT = object()


def format_address(address) -> str:
    if not address:
        return "unknown"
    host, port = address[0], address[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class H2Stream:
    """A single request stream, exposed to the app as ASGI receive/send."""

    def __init__(self, connection: "H2Connection", stream_id: int, headers):
        self.connection = connection
        self.stream_id = stream_id
        self.request_headers = headers
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.request_complete = False
        self.response_start: Optional[dict] = None
        self.headers_sent = False
        self.response_complete = False
        self.closed = asyncio.Event()
        self.window_open = asyncio.Event()
        self._body_returned = False

    def scope(self) -> dict:
        pseudo = {}
        headers = []
        for name, value in self.request_headers:
            if name.startswith(b":"):
                pseudo[name] = value
            else:
                headers.append((name, value))
        if b":authority" in pseudo:
            headers.insert(0, (b"host", pseudo[b":authority"]))
        raw_path, _, query_string = pseudo.get(b":path", b"/").partition(b"?")
        return {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.3"},
            "http_version": "2",
            "method": pseudo.get(b":method", b"GET").decode("ascii"),
            "scheme": pseudo.get(b":scheme", b"https").decode("ascii"),
            "path": unquote(raw_path.decode("ascii")),
            "raw_path": raw_path,
            "query_string": query_string,
            "root_path": "",
            "headers": headers,
            "client": self.connection.client,
            "server": self.connection.server,
            "extensions": {},
        }

    async def receive(self) -> dict:
        if self._body_returned:
            await self.closed.wait()
            return {"type": "http.disconnect"}
        item = await self.inbound.get()
        if item is DISCONNECT:
            self.inbound.put_nowait(DISCONNECT)
            return {"type": "http.disconnect"}
        if item is END_OF_BODY:
            self._body_returned = True
            return {"type": "http.request", "body": b"", "more_body": False}
        data, flow_controlled_length = item
        self.connection.acknowledge(self.stream_id, flow_controlled_length)
        return {"type": "http.request", "body": data, "more_body": True}

    async def send(self, message: dict) -> None:
        if self.closed.is_set() or self.response_complete:
            return
        if message["type"] == "http.response.start":
            self.response_start = message
        elif message["type"] == "http.response.body":
            if self.response_start is None:
                raise RuntimeError("http.response.body sent before http.response.start")
            body = message.get("body", b"")
            more_body = message.get("more_body", False)
            if not self.headers_sent:
                self.headers_sent = True
                end_stream = not body and not more_body
                await self.connection.send_headers(self.stream_id, self.response_headers(), end_stream)
                if end_stream:
                    self.response_complete = True
                    return
            await self.connection.send_data(self, body, end_stream=not more_body)
            if not more_body:
                self.response_complete = True

    def response_headers(self):
        headers = [(b":status", str(self.response_start["status"]).encode("ascii"))]
        for name, value in self.response_start.get("headers", []):
            name = bytes(name).lower()
            if name not in CONNECTION_HEADERS:
                headers.append((name, bytes(value)))
        return headers

    def close(self) -> None:
        if not self.closed.is_set():
            self.closed.set()
            self.window_open.set()
            self.inbound.put_nowait(DISCONNECT)


class H2Connection:
    """Drives one TLS connection that negotiated h2."""

    def __init__(self, app, config: ServerConfig, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.app = app
        self.config = config
        self.reader = reader
        self.writer = writer
        self.client: Optional[Tuple[str, int]] = self._address("peername")
        self.server: Optional[Tuple[str, int]] = self._address("sockname")
        self.remote = format_address(self.client)
        self.streams: Dict[int, H2Stream] = {}
        self.tasks: Set[asyncio.Task] = set()
        self.closing = False
        self.closed = False

        self.conn = h2.connection.H2Connection(
            config=h2.config.H2Configuration(client_side=False, header_encoding=None)
        )
        self.conn.local_settings = h2.settings.Settings(
            client=False,
            initial_values={
                h2.settings.SettingCodes.INITIAL_WINDOW_SIZE: config.initial_stream_window_size,
                h2.settings.SettingCodes.MAX_FRAME_SIZE: config.max_frame_size,
                h2.settings.SettingCodes.MAX_CONCURRENT_STREAMS: config.max_concurrent_streams,
            },
        )
        self.conn.max_inbound_frame_size = config.max_frame_size

    def _address(self, name):
        address = self.writer.get_extra_info(name)
        if isinstance(address, tuple) and len(address) >= 2:
            return address[0], address[1]
        return None

    async def run(self) -> None:
        self.conn.initiate_connection()
        increment = self.config.initial_connection_window_size - self.conn.inbound_flow_control_window
        if increment > 0:
            self.conn.increment_flow_control_window(increment)
        try:
            await self.flush()
            while not self.closed:
                try:
                    data = await self.reader.read(self.config.read_size)
                except OSError as e:
                    logger.info(f"conn error remote={self.remote}: {e}")
                    break
                if not data:
                    break
                try:
                    events = self.conn.receive_data(data)
                except h2.exceptions.ProtocolError as e:
                    logger.warning(f"conn error remote={self.remote}: {e!r}")
                    self.flush_nowait()
                    break
                for event in events:
                    self.handle_event(event)
                self.flush_nowait()
        finally:
            await self.close()

    def handle_event(self, event) -> None:
        if isinstance(event, h2.events.RequestReceived):
            self.open_stream(event.stream_id, event.headers)
        elif isinstance(event, h2.events.DataReceived):
            stream = self.streams.get(event.stream_id)
            if stream is None or stream.response_complete:
                self.acknowledge(event.stream_id, event.flow_controlled_length)
            else:
                stream.inbound.put_nowait((event.data, event.flow_controlled_length))
        elif isinstance(event, h2.events.StreamEnded):
            stream = self.streams.get(event.stream_id)
            if stream is not None:
                stream.request_complete = True
                stream.inbound.put_nowait(END_OF_BODY)
        elif isinstance(event, h2.events.StreamReset):
            stream = self.streams.get(event.stream_id)
            if stream is not None:
                logger.debug(f"stream {event.stream_id} reset by peer remote={self.remote} code={event.error_code!r}")
                stream.close()
        elif isinstance(event, h2.events.WindowUpdated):
            self.window_updated(event.stream_id)
        elif isinstance(event, h2.events.RemoteSettingsChanged):
            if h2.settings.SettingCodes.INITIAL_WINDOW_SIZE in event.changed_settings:
                self.window_updated(0)
        elif isinstance(event, h2.events.ConnectionTerminated):
            logger.info(f"conn goaway remote={self.remote} code={event.error_code!r}")

    def open_stream(self, stream_id: int, headers) -> None:
        stream = H2Stream(self, stream_id, headers)
        self.streams[stream_id] = stream
        task = asyncio.ensure_future(self.run_stream(stream))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def run_stream(self, stream: H2Stream) -> None:
        try:
            call = self.app(stream.scope(), stream.receive, stream.send)
            if self.config.request_timeout:
                await asyncio.wait_for(call, self.config.request_timeout)
            else:
                await call
        except asyncio.TimeoutError:
            logger.warning(
                f"stream {stream.stream_id} timed out after {self.config.request_timeout}s remote={self.remote}"
            )
            self.reset(stream.stream_id, ErrorCodes.CANCEL)
        except OSError as e:
            logger.info(f"stream {stream.stream_id} write failed remote={self.remote}: {e}")
            stream.close()
        except Exception:
            logger.exception(f"Exception in ASGI application on stream {stream.stream_id}")
            await self.fail(stream)
        else:
            if not stream.response_complete and not stream.closed.is_set():
                logger.error(f"ASGI application returned without completing stream {stream.stream_id}")
                await self.fail(stream)
        finally:
            self.finish(stream)

    async def fail(self, stream: H2Stream) -> None:
        if stream.closed.is_set():
            return
        if stream.headers_sent:
            self.reset(stream.stream_id, ErrorCodes.INTERNAL_ERROR)
            return
        stream.headers_sent = True
        stream.response_complete = True
        try:
            await self.send_headers(stream.stream_id, [(b":status", b"500")], end_stream=True)
        except OSError:
            stream.close()

    def finish(self, stream: H2Stream) -> None:
        """Release a stream once its app task is over."""
        if stream.response_complete and not stream.request_complete and not stream.closed.is_set():
            # Response is out but the peer is still sending; stop it.
            self.reset(stream.stream_id, ErrorCodes.NO_ERROR)
        while not stream.inbound.empty():
            item = stream.inbound.get_nowait()
            if isinstance(item, tuple):
                self.acknowledge(stream.stream_id, item[1])
        stream.close()
        self.streams.pop(stream.stream_id, None)
        self.flush_nowait()

    def acknowledge(self, stream_id: int, length: int) -> None:
        if self.closed:
            return
        try:
            self.conn.acknowledge_received_data(length, stream_id)
        except h2.exceptions.ProtocolError:
            return
        self.flush_nowait()

    def reset(self, stream_id: int, error_code: ErrorCodes) -> None:
        try:
            self.conn.reset_stream(stream_id, error_code=error_code)
        except h2.exceptions.ProtocolError:
            pass
        stream = self.streams.get(stream_id)
        if stream is not None:
            stream.close()
        self.flush_nowait()

    def window_updated(self, stream_id: int) -> None:
        if stream_id == 0:
            for stream in self.streams.values():
                stream.window_open.set()
        elif stream_id in self.streams:
            self.streams[stream_id].window_open.set()

    async def send_headers(self, stream_id: int, headers, end_stream: bool) -> None:
        try:
            self.conn.send_headers(stream_id, headers, end_stream=end_stream)
        except h2.exceptions.ProtocolError as e:
            logger.debug(f"stream {stream_id} gone before headers: {e!r}")
            stream = self.streams.get(stream_id)
            if stream is not None:
                stream.close()
            return
        await self.flush()

    async def send_data(self, stream: H2Stream, data, end_stream: bool) -> None:
        view = memoryview(data)
        try:
            if not view and end_stream:
                self.conn.end_stream(stream.stream_id)
                await self.flush()
                return
            while view and not stream.closed.is_set():
                window = self.conn.local_flow_control_window(stream.stream_id)
                if window <= 0:
                    stream.window_open.clear()
                    await stream.window_open.wait()
                    continue
                size = min(window, len(view), self.conn.max_outbound_frame_size)
                self.conn.send_data(stream.stream_id, view[:size], end_stream=end_stream and size == len(view))
                view = view[size:]
                await self.flush()
        except h2.exceptions.ProtocolError as e:
            logger.debug(f"stream {stream.stream_id} closed while sending: {e!r}")
            stream.close()

    def flush_nowait(self) -> None:
        data = self.conn.data_to_send()
        if data and not self.writer.is_closing():
            self.writer.write(data)

    async def flush(self) -> None:
        self.flush_nowait()
        await self.writer.drain()

    async def close(self) -> None:
        if self.closing:
            return
        self.closing = True
        for stream in list(self.streams.values()):
            stream.close()
        tasks = list(self.tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.closed = True
        try:
            self.conn.close_connection()
        except h2.exceptions.ProtocolError:
            pass
        self.flush_nowait()
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass


class H2Server:
    """TCP listener that terminates TLS and runs one H2Connection per client."""

    def __init__(self, app, config: Optional[ServerConfig] = None):
        self.app = app
        self.config = config or ServerConfig()
        self.config.validate()
        self.ssl_context = self.config.create_ssl_context()
        self.server: Optional[asyncio.AbstractServer] = None
        self.connections: Set[H2Connection] = set()

    async def start(self) -> None:
        self.server = await asyncio.start_server(
            self.handle_client, self.config.address, self.config.port, reuse_address=True
        )
        for address in self.addresses:
            logger.info(f"serving h2 at https://{format_address(address)}")

    @property
    def addresses(self):
        if self.server is None:
            return []
        return [sock.getsockname() for sock in self.server.sockets]

    async def serve_forever(self) -> None:
        if self.server is None:
            await self.start()
        async with self.server:
            await self.server.serve_forever()

    async def close(self) -> None:
        if self.server is not None:
            self.server.close()
            for connection in list(self.connections):
                await connection.close()
            await self.server.wait_closed()

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        remote = format_address(writer.get_extra_info("peername"))
        try:
            await writer.start_tls(self.ssl_context, ssl_handshake_timeout=self.config.handshake_timeout)
        except OSError as e:
            logger.info(f"TLS handshake error from {remote}: {e!r}")
            writer.close()
            return

        ssl_object = writer.get_extra_info("ssl_object")
        alpn = ssl_object.selected_alpn_protocol() if ssl_object is not None else None
        if alpn != "h2":
            logger.info(f"conn refused remote={remote} alpn={alpn or 'none'}")
            writer.close()
            return

        logger.info(f"conn new remote={remote} alpn={alpn}")
        connection = H2Connection(self.app, self.config, reader, writer)
        self.connections.add(connection)
        try:
            await connection.run()
        except Exception:
            logger.exception(f"conn failed remote={remote}")
        finally:
            self.connections.discard(connection)
            logger.info(f"conn closed remote={remote}")


async def serve(app, config: ServerConfig) -> None:
    """Bind and serve until cancelled."""
    server = H2Server(app, config)
    await server.serve_forever()
