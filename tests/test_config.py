"""Tests for ServerConfig."""

import ssl

import pytest

from h2perf.config import DEFAULT_WINDOW_SIZE, MAX_FRAME_SIZE, ServerConfig


class TestServerConfig:
    """Tests for defaults, overrides and validation."""

    def test_defaults(self):
        """Defaults match the benchmark server's documented settings."""
        config = ServerConfig()

        assert config.address == "127.0.0.1"
        assert config.port == 4444
        assert config.certfile == "testdata/cert.pem"
        assert config.keyfile == "testdata/key.pem"
        assert config.static_dir == "./static/http2"
        assert config.alpn_protocols == ["h2"]
        assert config.initial_stream_window_size == DEFAULT_WINDOW_SIZE == 1 << 30
        assert config.initial_connection_window_size == 1 << 30
        assert config.max_frame_size == MAX_FRAME_SIZE == (1 << 24) - 1
        assert config.request_timeout == 600.0

    def test_override_does_not_touch_class_defaults(self):
        config = ServerConfig(port=8443, request_timeout=0)

        assert config.port == 8443
        assert config.request_timeout == 0
        assert ServerConfig.port == 4444
        assert ServerConfig().port == 4444

    def test_unknown_setting_is_rejected(self):
        with pytest.raises(TypeError, match="Unknown server setting: prot"):
            ServerConfig(prot=1)

    @pytest.mark.parametrize("address", ["127.0.0.1", "0.0.0.0", "::1", "localhost"])
    def test_valid_addresses(self, address):
        ServerConfig(address=address).validate()

    @pytest.mark.parametrize(
        "settings",
        [
            {"address": "example..com"},
            {"port": -1},
            {"port": 70000},
            {"initial_stream_window_size": 1000},
            {"initial_connection_window_size": 2**31},
            {"max_frame_size": 1024},
            {"max_frame_size": 1 << 24},
        ],
    )
    def test_invalid_settings(self, settings):
        """Out-of-range settings raise ValueError from validate."""
        with pytest.raises(ValueError):
            ServerConfig(**settings).validate()

    def test_bind_brackets_ipv6(self):
        assert ServerConfig(address="::1", port=4444).bind == "[::1]:4444"
        assert ServerConfig(address="127.0.0.1", port=4443).bind == "127.0.0.1:4443"


class TestSSLContext:
    """Tests for create_ssl_context."""

    def test_context_loads_certificate(self, cert_pair):
        """The context is a TLS 1.2+ server context."""
        config = ServerConfig(certfile=cert_pair[0], keyfile=cert_pair[1])

        context = config.create_ssl_context()

        assert isinstance(context, ssl.SSLContext)
        assert context.minimum_version == ssl.TLSVersion.TLSv1_2
        assert context.options & ssl.OP_NO_COMPRESSION

    def test_missing_certificate_raises(self, tmp_path):
        config = ServerConfig(certfile=str(tmp_path / "cert.pem"), keyfile=str(tmp_path / "key.pem"))

        with pytest.raises(FileNotFoundError):
            config.create_ssl_context()

    def test_malformed_certificate_raises(self, tmp_path):
        cert = tmp_path / "cert.pem"
        cert.write_text("not a certificate")
        config = ServerConfig(certfile=str(cert), keyfile=str(cert))

        with pytest.raises(ssl.SSLError):
            config.create_ssl_context()
