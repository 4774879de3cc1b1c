"""Shared fixtures: a throwaway certificate and a live HTTP/2 server."""

import pytest
import pytest_asyncio

from h2perf.api import create_app
from h2perf.certs import generate_self_signed_cert
from h2perf.config import ServerConfig
from h2perf.transport import H2Server


@pytest.fixture(scope="session")
def cert_pair(tmp_path_factory):
    directory = tmp_path_factory.mktemp("certs")
    cert, key = generate_self_signed_cert(directory / "cert.pem", directory / "key.pem")
    return str(cert), str(key)


@pytest.fixture
def static_dir(tmp_path):
    directory = tmp_path / "static"
    directory.mkdir()
    (directory / "index.html").write_text("<h1>h2perf</h1>")
    (directory / "hello.txt").write_text("hello")
    return str(directory)


@pytest.fixture
def server_config(cert_pair, static_dir):
    cert, key = cert_pair
    return ServerConfig(port=0, certfile=cert, keyfile=key, static_dir=static_dir)


@pytest_asyncio.fixture
async def h2_server(server_config):
    server = H2Server(create_app(server_config.static_dir), server_config)
    await server.start()
    yield server
    await server.close()


@pytest.fixture
def server_address(h2_server):
    host, port = h2_server.addresses[0][:2]
    return host, port


@pytest.fixture
def base_url(server_address):
    host, port = server_address
    return f"https://{host}:{port}"
