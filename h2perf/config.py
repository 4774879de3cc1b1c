import ipaddress
import ssl
from typing import List, Optional

# RFC 7540 limits.
MAX_WINDOW_SIZE = 2**31 - 1
MAX_FRAME_SIZE = 2**24 - 1
DEFAULT_WINDOW_SIZE = 1 << 30  # 1 GiB

DEFAULT_STATIC_DIR = "./static/http2"


class ServerConfig:
    """Listener, TLS and HTTP/2 transport settings.

    Defaults live on the class; override per instance, e.g.

        config = ServerConfig()
        config.port = 8443
    """

    address = "127.0.0.1"
    port = 4444
    certfile = "testdata/cert.pem"
    keyfile = "testdata/key.pem"
    static_dir = DEFAULT_STATIC_DIR
    alpn_protocols: List[str] = ["h2"]

    # Large windows so flow control never caps benchmark throughput.
    initial_stream_window_size = DEFAULT_WINDOW_SIZE
    initial_connection_window_size = DEFAULT_WINDOW_SIZE
    max_frame_size = MAX_FRAME_SIZE
    max_concurrent_streams = 100

    read_size = 1 << 20
    # Seconds one request may take end to end; 0 disables.
    request_timeout: Optional[float] = 600.0
    handshake_timeout = 10.0

    def __init__(self, **kwargs):
        for name, value in kwargs.items():
            if not hasattr(self, name):
                raise TypeError(f"Unknown server setting: {name}")
            setattr(self, name, value)

    def validate(self) -> None:
        """Raise ValueError for settings that can never bind or negotiate."""
        try:
            ipaddress.ip_address(self.address)
        except ValueError:
            if self.address != "localhost":
                raise ValueError(f"Invalid listen address: {self.address!r}")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Invalid listen port: {self.port}")
        if not 65535 <= self.initial_stream_window_size <= MAX_WINDOW_SIZE:
            raise ValueError(f"Stream window out of range: {self.initial_stream_window_size}")
        if not 65535 <= self.initial_connection_window_size <= MAX_WINDOW_SIZE:
            raise ValueError(f"Connection window out of range: {self.initial_connection_window_size}")
        if not 2**14 <= self.max_frame_size <= MAX_FRAME_SIZE:
            raise ValueError(f"Max frame size out of range: {self.max_frame_size}")

    def create_ssl_context(self) -> ssl.SSLContext:
        """TLS server context restricted to the configured ALPN protocols.

        Missing or malformed certificate/key files raise here, before the
        listener is bound.
        """
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2  # RFC 7540 Section 9.2
        context.options |= ssl.OP_NO_COMPRESSION
        context.set_alpn_protocols(self.alpn_protocols)
        context.load_cert_chain(certfile=self.certfile, keyfile=self.keyfile)
        return context

    @property
    def bind(self) -> str:
        if ":" in self.address:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"
