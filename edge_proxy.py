#!/usr/bin/env python3
"""
EdgeGuard Proxy - HTTP edge security gateway in front of a single backend.

Every inbound HTTP/1.1 request is parsed, run through the security gateway
(WAF, rate limiting, DDoS detection) and either answered directly with the
gateway's block response or forwarded to the configured backend. Responses
from the backend pass back through the gateway's post-response hook, which
adds rate-limit and security headers.

Security Features:
- Request size limits and read timeouts
- Fail-open detection stages, fail-closed on detected abuse
- Sensitive data redaction in logs
- Redis authentication enforced in production
- Prometheus metrics for every stage decision
"""

import asyncio
import logging
import os
import re
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import geoip2.database
import geoip2.errors
import redis
import yaml
from prometheus_client import start_http_server

from src.edgeguard import (
    ConfigurationError,
    GatewayConfig,
    GatewayResponse,
    Headers,
    Identity,
    KVStore,
    MemoryKVStore,
    RedisKVStore,
    RequestDescriptor,
    RequestParseError,
    SecurityGateway,
    configure_logging,
    create_security_gateway,
)
from src.edgeguard.metrics import ACTIVE_CONNECTIONS, GATEWAY_INFO


VERSION = '1.0.0'

MAX_REQUEST_SIZE = 1024 * 1024  # 1MB
MAX_HEADER_SIZE = 8192  # 8KB
MAX_RESPONSE_SIZE = 16 * 1024 * 1024
DEFAULT_TIMEOUT = 30

HOP_BY_HOP_HEADERS = (
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'te', 'trailer', 'upgrade',
)

REASON_PHRASES = {
    200: 'OK', 204: 'No Content', 400: 'Bad Request', 403: 'Forbidden',
    404: 'Not Found', 411: 'Length Required', 413: 'Payload Too Large',
    429: 'Too Many Requests', 431: 'Request Header Fields Too Large',
    500: 'Internal Server Error', 501: 'Not Implemented', 502: 'Bad Gateway',
    504: 'Gateway Timeout',
}

HEADER_VALUE_UNSAFE = re.compile(r'[\r\n\x00]')


class SecurityError(Exception):
    """Startup security requirement not met."""
    pass


class ValidationError(ConfigurationError):
    """Invalid configuration."""
    pass


class RequestTooLargeError(RequestParseError):
    """Request head or body exceeds the configured limits."""
    pass


class ConfigManager:
    """Configuration management."""

    def __init__(self, config_path: str = "config/gateway.yml"):
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        self.config = self.load_config()

    def load_config(self) -> Dict:
        """Load configuration from YAML file with validation."""
        try:
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f)
            return self._validate_config(config)
        except FileNotFoundError:
            self.logger.warning(f"Config file not found: {self.config_path}, using defaults")
            return self._default_config()
        except yaml.YAMLError as e:
            self.logger.error(f"YAML parsing error: {e}")
            raise ValidationError(f"Invalid configuration file: {e}")

    def _validate_config(self, config: Dict) -> Dict:
        """Fill missing sections and validate the ones present."""
        if not isinstance(config, dict):
            raise ValidationError("Configuration must be a dictionary")

        defaults = self._default_config()
        for section in ('proxy', 'redis', 'security', 'metrics', 'logging'):
            if section not in config or config[section] is None:
                self.logger.warning(f"Missing section: {section}, using defaults")
                config[section] = defaults[section]
            elif not isinstance(config[section], dict):
                raise ValidationError(f"Section {section} must be a mapping")
            else:
                merged = dict(defaults[section])
                merged.update(config[section])
                config[section] = merged

        config = self._expand_env_vars(config)

        self._validate_proxy_config(config['proxy'])
        self._validate_redis_config(config['redis'])
        self._validate_metrics_config(config['metrics'])
        return config

    def _validate_port(self, name: str, port) -> None:
        if not isinstance(port, int) or isinstance(port, bool) or port < 1 or port > 65535:
            raise ValidationError(f"Invalid {name}: {port}")

    def _validate_proxy_config(self, proxy_config: Dict) -> None:
        bind_host = proxy_config.get('bind_host')
        if not isinstance(bind_host, str):
            raise ValidationError("bind_host must be a string")
        if bind_host == '0.0.0.0':
            self.logger.warning("SECURITY: Binding to 0.0.0.0 exposes service to all interfaces")

        self._validate_port('bind_port', proxy_config.get('bind_port'))
        self._validate_port('backend_port', proxy_config.get('backend_port'))

        backend_host = proxy_config.get('backend_host')
        if not isinstance(backend_host, str) or not backend_host or len(backend_host) > 255:
            raise ValidationError(f"Invalid backend_host: {backend_host}")

        for name in ('connection_timeout', 'read_timeout'):
            value = proxy_config.get(name)
            if not isinstance(value, (int, float)) or value <= 0 or value > 3600:
                raise ValidationError(f"Invalid {name}: {value}")

    def _validate_redis_config(self, redis_config: Dict) -> None:
        backend = redis_config.get('backend', 'redis')
        if backend not in ('redis', 'memory'):
            raise ValidationError(f"Invalid redis backend: {backend}")
        if backend == 'memory':
            if os.getenv('ENVIRONMENT', 'production') == 'production':
                self.logger.warning(
                    "SECURITY: In-memory store is per-process; counters are not shared"
                )
            return

        password = redis_config.get('password')
        if not password or password == 'null':
            if os.getenv('ENVIRONMENT', 'production') == 'production':
                raise ValidationError("SECURITY: Redis password is required in production")
            self.logger.warning("SECURITY: Redis running without authentication")

        host = redis_config.get('host')
        if not isinstance(host, str) or len(host) > 255:
            raise ValidationError(f"Invalid Redis host: {host}")
        self._validate_port('Redis port', redis_config.get('port'))

    def _validate_metrics_config(self, metrics_config: Dict) -> None:
        if metrics_config.get('enabled'):
            self._validate_port('metrics port', metrics_config.get('port'))

    def _expand_env_vars(self, config: Dict) -> Dict:
        """Expand ${VAR_NAME} references, typically for secrets."""
        pattern = re.compile(r'\$\{([^}]+)\}')

        def expand_value(value):
            if isinstance(value, str):
                for var_name in pattern.findall(value):
                    env_value = os.getenv(var_name)
                    if env_value is None:
                        self.logger.warning(f"Environment variable not set: {var_name}")
                        env_value = ''
                    value = value.replace(f'${{{var_name}}}', env_value)
                return value
            if isinstance(value, dict):
                return {k: expand_value(v) for k, v in value.items()}
            if isinstance(value, list):
                return [expand_value(item) for item in value]
            return value

        return expand_value(config)

    def _default_config(self) -> Dict:
        """Default configuration."""
        return {
            'proxy': {
                'bind_host': '0.0.0.0',
                'bind_port': 8080,
                'backend_host': '127.0.0.1',
                'backend_port': 80,
                'connection_timeout': 30,
                'read_timeout': 30,
                'trust_identity_headers': False,
                'identity_id_header': 'X-Authenticated-User',
                'identity_role_header': 'X-Authenticated-Role',
            },
            'redis': {
                'backend': 'redis',
                'host': 'localhost',
                'port': 6379,
                'db': 0,
                'password': None,
                'timeout': 5,
                'namespace': 'edgeguard',
            },
            'security': {
                'waf_enabled': True,
                'ddos_enabled': True,
                'ip_rate_limit': 100,
                'user_rate_limit': 500,
            },
            'metrics': {
                'enabled': True,
                'port': 9090,
            },
            'logging': {
                'level': 'INFO',
                'format': '%(asctime)s - %(name)s - %(levelname)s - [%(event_type)s] %(message)s',
            },
        }


@dataclass
class ParsedRequest:
    """Raw HTTP/1.1 request as read from the client socket."""

    method: str
    target: str
    version: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b''

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None


def parse_request_head(head: bytes) -> ParsedRequest:
    """
    Parse a request line and headers (without the trailing blank line).

    Raises:
        RequestParseError: On a malformed request line or header
    """
    try:
        text = head.decode('iso-8859-1')
    except UnicodeDecodeError as e:
        raise RequestParseError(f"Undecodable request head: {e}")

    lines = text.split('\r\n')
    parts = lines[0].split(' ')
    if len(parts) != 3:
        raise RequestParseError("Malformed request line")
    method, target, version = parts
    if not method.isalpha() or not version.startswith('HTTP/1.'):
        raise RequestParseError("Unsupported request line")
    if not target.startswith('/'):
        raise RequestParseError("Only origin-form request targets are supported")

    headers = []
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(':')
        if not sep or not name or name != name.strip():
            raise RequestParseError("Malformed header line")
        headers.append((name, value.strip()))
    return ParsedRequest(method=method.upper(), target=target, version=version, headers=headers)


async def read_request(reader: asyncio.StreamReader, timeout: float) -> Optional[ParsedRequest]:
    """
    Read one request from the client.

    Returns None when the client closed the connection before sending.

    Raises:
        RequestParseError: Malformed or oversized request
        asyncio.TimeoutError: Client too slow
    """
    try:
        head = await asyncio.wait_for(reader.readuntil(b'\r\n\r\n'), timeout=timeout)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise RequestParseError("Incomplete request head")
    except asyncio.LimitOverrunError:
        raise RequestTooLargeError("Request head too large")

    if len(head) > MAX_HEADER_SIZE:
        raise RequestTooLargeError("Request head too large")

    request = parse_request_head(head[:-4])

    if request.header('Transfer-Encoding'):
        raise RequestParseError("Chunked request bodies are not supported")

    length_header = request.header('Content-Length')
    if length_header:
        try:
            length = int(length_header)
        except ValueError:
            raise RequestParseError("Invalid Content-Length")
        if length < 0 or length > MAX_REQUEST_SIZE:
            raise RequestTooLargeError("Request body too large")
        if length:
            try:
                request.body = await asyncio.wait_for(reader.readexactly(length), timeout=timeout)
            except asyncio.IncompleteReadError:
                raise RequestParseError("Incomplete request body")
    return request


async def read_until_eof(reader: asyncio.StreamReader, limit: int) -> bytes:
    """
    Read until the peer closes the connection.

    Raises:
        RequestParseError: If more than `limit` bytes arrive
    """
    chunks = []
    total = 0
    while True:
        chunk = await reader.read(65536)
        if not chunk:
            return b''.join(chunks)
        total += len(chunk)
        if total > limit:
            raise RequestParseError("Backend response too large")
        chunks.append(chunk)


def to_descriptor(request: ParsedRequest, peer_ip: Optional[str]) -> RequestDescriptor:
    return RequestDescriptor(
        method=request.method,
        url=request.target,
        headers=Headers(request.headers),
        body=request.body,
        peer_ip=peer_ip,
    )


def extract_identity(request: ParsedRequest, proxy_config: Dict) -> Optional[Identity]:
    """Identity asserted by a trusted upstream authenticator, if enabled."""
    if not proxy_config.get('trust_identity_headers', False):
        return None
    user_id = request.header(proxy_config.get('identity_id_header', 'X-Authenticated-User'))
    role = request.header(proxy_config.get('identity_role_header', 'X-Authenticated-Role'))
    return Identity.from_dict({'id': user_id, 'role': role})


def serialize_response(response: GatewayResponse) -> bytes:
    """Render a gateway response as an HTTP/1.1 message (Connection: close)."""
    body = b'' if response.status in (204, 304) else response.body_bytes
    reason = REASON_PHRASES.get(response.status, 'Unknown')
    lines = [f"HTTP/1.1 {response.status} {reason}"]

    has_length = False
    chunked = False
    for name, value in response.headers.items():
        lowered = name.lower()
        if lowered in HOP_BY_HOP_HEADERS:
            continue
        if lowered == 'content-length':
            has_length = True
        if lowered == 'transfer-encoding':
            chunked = True
        lines.append(f"{name}: {HEADER_VALUE_UNSAFE.sub(' ', str(value))}")

    if not has_length and not chunked and response.status not in (204, 304):
        lines.append(f"Content-Length: {len(body)}")
    lines.append('Connection: close')

    head = ('\r\n'.join(lines) + '\r\n\r\n').encode('latin-1', errors='replace')
    return head + body


def parse_backend_response(data: bytes) -> GatewayResponse:
    """
    Parse the full backend response (read until EOF).

    Raises:
        RequestParseError: If the status line or headers are malformed
    """
    head, sep, body = data.partition(b'\r\n\r\n')
    if not sep:
        raise RequestParseError("Backend response has no header terminator")

    lines = head.decode('iso-8859-1').split('\r\n')
    status_parts = lines[0].split(' ', 2)
    if len(status_parts) < 2 or not status_parts[0].startswith('HTTP/'):
        raise RequestParseError("Malformed backend status line")
    try:
        status = int(status_parts[1])
    except ValueError:
        raise RequestParseError("Malformed backend status code")

    headers = Headers()
    for line in lines[1:]:
        name, sep, value = line.partition(':')
        if sep and name:
            headers.set(name.strip(), value.strip())
    return GatewayResponse(status=status, body=body, headers=headers)


def build_forward_request(request: ParsedRequest, client_ip: str, target: Optional[str] = None) -> bytes:
    """
    Rebuild the client request for the backend with forwarding headers.

    `target` replaces the received request target, so the backend sees the
    same normalised path the gateway inspected.
    """
    lines = [f"{request.method} {target or request.target} HTTP/1.1"]
    forwarded_for = None
    for name, value in request.headers:
        lowered = name.lower()
        if lowered in HOP_BY_HOP_HEADERS:
            continue
        if lowered == 'x-forwarded-for':
            forwarded_for = value
            continue
        lines.append(f"{name}: {value}")

    chain = f"{forwarded_for}, {client_ip}" if forwarded_for else client_ip
    lines.append(f"X-Forwarded-For: {chain}")
    lines.append('Connection: close')
    head = ('\r\n'.join(lines) + '\r\n\r\n').encode('iso-8859-1', errors='replace')
    return head + request.body


def build_geo_resolver(database_path: Optional[str]) -> Optional[Callable[[str], Optional[str]]]:
    """Country resolver backed by a MaxMind database, or None."""
    if not database_path:
        return None
    reader = geoip2.database.Reader(database_path)
    logger = logging.getLogger(__name__)

    def resolve(ip: str) -> Optional[str]:
        try:
            return reader.country(ip).country.iso_code
        except (geoip2.errors.AddressNotFoundError, ValueError):
            return None
        except geoip2.errors.GeoIP2Error as e:
            logger.warning(f"GeoIP lookup failed: {e}")
            return None

    return resolve


class ProxyServer:
    """Main proxy server implementation."""

    def __init__(
        self,
        config_path: str = "config/gateway.yml",
        kv_store: Optional[KVStore] = None,
        gateway: Optional[SecurityGateway] = None,
    ):
        self.config_manager = ConfigManager(config_path)
        self.config = self.config_manager.config

        self.logger = self._init_logging()

        self.gateway_config = self._build_gateway_config()
        self.kv_store = kv_store or self._init_kv_store()
        self.gateway = gateway or create_security_gateway(
            self.gateway_config,
            self.kv_store,
            geo_resolver=build_geo_resolver(self.gateway_config.geoip_database),
        )

        self.active_connections = 0

    def _init_logging(self) -> logging.Logger:
        log_config = self.config['logging']
        configure_logging(
            log_config.get('level', 'INFO'),
            log_config.get('format'),
            production=os.getenv('ENVIRONMENT', 'production') == 'production',
        )
        return logging.getLogger(__name__)

    def _build_gateway_config(self) -> GatewayConfig:
        """YAML `security` section, overridden by SECURITY_* variables."""
        return GatewayConfig.from_env(base=self.config.get('security') or {})

    def _init_kv_store(self) -> KVStore:
        """Create the counter store with security validation."""
        redis_config = self.config['redis']
        if redis_config.get('backend') == 'memory':
            self.logger.warning("Using in-memory KV store; state is not shared between processes")
            return MemoryKVStore()

        password = redis_config.get('password')
        if not password:
            if os.getenv('ENVIRONMENT', 'production') == 'production':
                raise SecurityError("Redis password is required in production environment")
            self.logger.warning("SECURITY WARNING: Redis connection without authentication")

        try:
            redis_client = redis.Redis(
                host=redis_config['host'],
                port=redis_config['port'],
                db=redis_config.get('db', 0),
                password=password if password else None,
                socket_timeout=redis_config.get('timeout', 5),
                socket_connect_timeout=redis_config.get('timeout', 5),
                retry_on_timeout=True,
                health_check_interval=30,
                decode_responses=False,
            )
            redis_client.ping()
            self.logger.info("Redis connection established successfully")
        except redis.AuthenticationError as e:
            self.logger.error(f"Redis authentication failed: {e}")
            raise SecurityError(f"Redis authentication failed - check credentials: {e}")
        except redis.ConnectionError as e:
            self.logger.error(f"Redis connection failed: {e}")
            raise SecurityError(f"Cannot establish Redis connection: {e}")

        return RedisKVStore(redis_client, namespace=redis_config.get('namespace', 'edgeguard'))

    async def start(self):
        """Start the metrics exporter and the proxy listener."""
        self.logger.info(f"Starting EdgeGuard proxy {VERSION}")
        GATEWAY_INFO.info({
            'version': VERSION,
            'environment': self.gateway_config.environment,
            'waf_enabled': str(self.gateway_config.waf_enabled).lower(),
            'ddos_enabled': str(self.gateway_config.ddos_enabled).lower(),
        })

        if self.config['metrics'].get('enabled'):
            metrics_port = self.config['metrics']['port']
            start_http_server(metrics_port)
            self.logger.info(f"Metrics server started on port {metrics_port}")
            self.logger.warning(
                "SECURITY: Metrics endpoint has no authentication. "
                "Restrict access using firewall rules or a reverse proxy."
            )

        proxy_config = self.config['proxy']
        server = await asyncio.start_server(
            self.handle_connection,
            proxy_config['bind_host'],
            proxy_config['bind_port'],
            limit=MAX_HEADER_SIZE * 2,
        )
        self.logger.info(
            f"Proxy server listening on {proxy_config['bind_host']}:{proxy_config['bind_port']}"
        )
        async with server:
            await server.serve_forever()

    async def handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle one client connection (one request, then close)."""
        peer = writer.get_extra_info('peername')
        peer_ip = peer[0] if peer else None

        self.active_connections += 1
        ACTIVE_CONNECTIONS.set(self.active_connections)

        proxy_config = self.config['proxy']
        try:
            try:
                parsed = await read_request(reader, proxy_config.get('read_timeout', DEFAULT_TIMEOUT))
                if parsed is None:
                    return
                request = to_descriptor(parsed, peer_ip)
            except RequestParseError as e:
                self.logger.warning(f"Rejected malformed request from {peer_ip}: {e}")
                status = 413 if isinstance(e, RequestTooLargeError) else 400
                await self._send(writer, GatewayResponse.text(status, REASON_PHRASES[status]))
                return

            response = await self.process(parsed, peer_ip, request)
            await self._send(writer, response)

        except asyncio.TimeoutError:
            self.logger.warning(f"TIMEOUT: {peer_ip} | Client read timed out")
        except (ConnectionError, OSError) as e:
            self.logger.debug(f"Connection error from {peer_ip}: {e}")
        except Exception as e:
            self.logger.error(f"ERROR: {peer_ip} | {e}", exc_info=True)
        finally:
            self.active_connections -= 1
            ACTIVE_CONNECTIONS.set(self.active_connections)
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def process(
        self,
        parsed: ParsedRequest,
        peer_ip: Optional[str],
        request: Optional[RequestDescriptor] = None,
    ) -> GatewayResponse:
        """Gateway pre-check, backend forward and post-response hook."""
        if request is None:
            request = to_descriptor(parsed, peer_ip)
        identity = extract_identity(parsed, self.config['proxy'])

        loop = asyncio.get_running_loop()
        blocked = await loop.run_in_executor(
            None, self.gateway.process_request, request, identity
        )
        if blocked is not None:
            return blocked

        client_ip = request.state.get(SecurityGateway.STATE_CLIENT_IP) or peer_ip or 'unknown'
        response = await self.forward_to_backend(parsed, client_ip, request.target)
        return await loop.run_in_executor(
            None, self.gateway.process_response, request, response, identity
        )

    async def forward_to_backend(
        self,
        parsed: ParsedRequest,
        client_ip: str,
        target: Optional[str] = None,
    ) -> GatewayResponse:
        """Send the request to the backend and read its full response."""
        proxy_config = self.config['proxy']
        timeout = proxy_config.get('connection_timeout', DEFAULT_TIMEOUT)
        started = time.time()
        try:
            backend_reader, backend_writer = await asyncio.wait_for(
                asyncio.open_connection(proxy_config['backend_host'], proxy_config['backend_port']),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, OSError) as e:
            self.logger.error(f"Backend connection failed: {e}")
            return GatewayResponse.text(502, 'Bad Gateway')

        try:
            backend_writer.write(build_forward_request(parsed, client_ip, target))
            await backend_writer.drain()
            data = await asyncio.wait_for(
                read_until_eof(backend_reader, MAX_RESPONSE_SIZE), timeout=timeout
            )
            response = parse_backend_response(data)
        except asyncio.TimeoutError:
            self.logger.error("Backend response timed out")
            return GatewayResponse.text(504, 'Gateway Timeout')
        except RequestParseError as e:
            self.logger.error(f"Invalid backend response: {e}")
            return GatewayResponse.text(502, 'Bad Gateway')
        finally:
            try:
                backend_writer.close()
                await backend_writer.wait_closed()
            except (ConnectionError, OSError):
                pass

        self.logger.debug(
            f"Backend answered {response.status} in {(time.time() - started) * 1000:.1f}ms"
        )
        return response

    async def _send(self, writer: asyncio.StreamWriter, response: GatewayResponse) -> None:
        writer.write(serialize_response(response))
        await writer.drain()


def main():
    """Main entry point."""
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config/gateway.yml"

    try:
        proxy = ProxyServer(config_path)
        asyncio.run(proxy.start())
    except KeyboardInterrupt:
        print("\nShutting down proxy server...")
    except (SecurityError, ValidationError) as e:
        logging.error(f"Startup failed: {e}")
        sys.exit(2)
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
