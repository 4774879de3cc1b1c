"""h2perf - HTTP/2+TLS upload/download server for client performance testing."""

__version__ = "0.1.0"

from .api import create_app  # noqa: E402
from .config import ServerConfig  # noqa: E402
from .transport import H2Server, serve  # noqa: E402

__all__ = ["create_app", "ServerConfig", "H2Server", "serve", "__version__"]
