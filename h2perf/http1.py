import logging

import uvicorn

from .config import ServerConfig

logger = logging.getLogger(__name__)

DEFAULT_PORT = 4443
DEFAULT_STATIC_DIR = "./static/http1"


def run_server(app, config: ServerConfig):
    """Serve `app` over HTTP/1.1+TLS with uvicorn (blocks until interrupted)."""
    config.validate()
    # Fail on unreadable cert/key before uvicorn starts its own loop.
    config.create_ssl_context()
    logger.info(f"Starting server at https://{config.bind} (HTTP/1.1)")
    uvicorn.run(
        app,
        host=config.address,
        port=config.port,
        ssl_keyfile=config.keyfile,
        ssl_certfile=config.certfile,
        http="h11",
        log_config=None,
    )
