# hlds_exporter/config.py
# Этот модуль собирает конфигурацию экспортера из аргументов командной строки
# и переменных окружения (значения окружения служат значениями по умолчанию
# для аргументов). Файл .env загружается в main до вызова load_config.
import argparse
import logging
import os
import re
from dataclasses import asdict, dataclass
from typing import List, Optional, Sequence, Tuple

from .aggregator import DEFAULT_SCRAPE_TIMEOUT
from .models import Target
from .query import DEFAULT_QUERY_ATTEMPTS, DEFAULT_QUERY_TIMEOUT

logger = logging.getLogger(__name__)

LOG_LEVELS = ('OFF', 'TRACE', 'DEBUG', 'INFO', 'WARN', 'WARNING', 'ERROR')
LOG_FORMATS = ('console', 'json')

DEFAULT_METRICS_ADDR = '127.0.0.1:9000'
DEFAULT_METRICS_PATH = '/metrics'
DEFAULT_SERVER_ADDR = '127.0.0.1:27015'
DEFAULT_LISTEN_ADDR = '0.0.0.0:0'


@dataclass(frozen=True)
class ExporterConfig:
    """Итоговая конфигурация процесса. Не меняется после запуска."""
    log_level: str
    log_format: str
    metrics_addr: Tuple[str, int]
    metrics_path: str
    server_addrs: Tuple[Target, ...]
    listen_addr: Tuple[str, int]
    query_timeout: float
    query_attempts: int
    scrape_timeout: float

    def log(self):
        """Логирует все значения конфигурации на уровне DEBUG."""
        for key, value in asdict(self).items():
            if key == 'server_addrs':
                value = [target.address for target in self.server_addrs]
            logger.debug(f"Config {key}={value}")
        if self.listen_addr[1] != 0:
            logger.warning(
                f"Listen port {self.listen_addr[1]} is ignored: each query binds {self.listen_addr[0]} on its own ephemeral port."
            )
        worst_case = self.query_timeout * self.query_attempts
        if worst_case > self.scrape_timeout:
            logger.info(
                f"Query budget ({self.query_attempts} x {self.query_timeout}s) exceeds scrape timeout "
                f"({self.scrape_timeout}s); slow targets will be cut off at the scrape deadline."
            )


def parse_socket_addr(value: str) -> Tuple[str, int]:
    """
    Разбирает адрес вида `host:port` или `[ipv6]:port` для привязки сокета.
    Порт обязателен, 0 означает эфемерный порт.
    """
    host, sep, port_str = value.strip().rpartition(':')
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"expected host:port, got {value!r}")
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    try:
        port = int(port_str)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port in {value!r}") from None
    if not 0 <= port < 65536:
        raise argparse.ArgumentTypeError(f"port out of range in {value!r}")
    return host, port


def _target(value: str) -> Target:
    try:
        return Target.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a number, got {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive number, got {value!r}")
    return number


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected an integer >= 1, got {value!r}")
    return number


def _log_level(value: str) -> str:
    level = value.strip().upper()
    if level not in LOG_LEVELS:
        raise argparse.ArgumentTypeError(f"invalid log level {value!r}, choose from {', '.join(LOG_LEVELS)}")
    return level


def _log_format(value: str) -> str:
    log_format = value.strip().lower()
    if log_format not in LOG_FORMATS:
        raise argparse.ArgumentTypeError(f"invalid log format {value!r}, choose from {', '.join(LOG_FORMATS)}")
    return log_format


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='hlds-exporter',
        description="HLDS metrics exporter in prometheus format",
    )
    parser.add_argument('--log-level', type=_log_level, default=os.getenv('LOG_LEVEL', 'INFO'),
                        help="Verbosity of logging (env LOG_LEVEL)")
    parser.add_argument('--log-format', type=_log_format, default=os.getenv('LOG_FORMAT', 'console'),
                        help="Format of logs: console or json (env LOG_FORMAT)")
    parser.add_argument('--metrics-addr', type=parse_socket_addr,
                        default=os.getenv('METRICS_ADDR', DEFAULT_METRICS_ADDR),
                        help="Address for exporting metrics (env METRICS_ADDR)")
    parser.add_argument('--metrics-path', default=os.getenv('METRICS_PATH', DEFAULT_METRICS_PATH),
                        help="HTTP path of the metrics endpoint (env METRICS_PATH)")
    parser.add_argument('--server-addr', type=_target, nargs='+', default=None,
                        help="HLDS server addresses (env SERVER_ADDR, comma or space separated)")
    parser.add_argument('--listen-addr', type=parse_socket_addr,
                        default=os.getenv('LISTEN_ADDR', DEFAULT_LISTEN_ADDR),
                        help="UDP bind address for queries; every query uses its own ephemeral port (env LISTEN_ADDR)")
    parser.add_argument('--query-timeout', type=_positive_float,
                        default=os.getenv('QUERY_TIMEOUT', str(DEFAULT_QUERY_TIMEOUT)),
                        help="Seconds to wait for a reply per attempt (env QUERY_TIMEOUT)")
    parser.add_argument('--query-attempts', type=_positive_int,
                        default=os.getenv('QUERY_ATTEMPTS', str(DEFAULT_QUERY_ATTEMPTS)),
                        help="Total query sends per server (env QUERY_ATTEMPTS)")
    parser.add_argument('--scrape-timeout', type=_positive_float,
                        default=os.getenv('SCRAPE_TIMEOUT', str(DEFAULT_SCRAPE_TIMEOUT)),
                        help="Overall deadline of one scrape in seconds (env SCRAPE_TIMEOUT)")
    return parser


def unique_targets(targets: Sequence[Target]) -> Tuple[Target, ...]:
    """Убирает повторяющиеся адреса, сохраняя порядок."""
    seen = {}
    for target in targets:
        if target.address in seen:
            logger.warning(f"Duplicate server address: {target.address}. Skipping")
            continue
        seen[target.address] = target
    return tuple(seen.values())


def load_config(argv: Optional[List[str]] = None) -> ExporterConfig:
    """
    Разбирает аргументы командной строки и окружение.

    Некорректные значения завершают процесс через parser.error (код 2)
    еще до запуска опроса.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.server_addr is None:
        raw = os.getenv('SERVER_ADDR', DEFAULT_SERVER_ADDR)
        values = [item for item in re.split(r'[,\s]+', raw) if item]
        if not values:
            parser.error("SERVER_ADDR must contain at least one address")
        try:
            args.server_addr = [Target.parse(item) for item in values]
        except ValueError as e:
            parser.error(f"invalid SERVER_ADDR: {e}")

    if not args.metrics_path.startswith('/'):
        parser.error(f"metrics path must start with '/', got {args.metrics_path!r}")

    return ExporterConfig(
        log_level=args.log_level,
        log_format=args.log_format,
        metrics_addr=args.metrics_addr,
        metrics_path=args.metrics_path,
        server_addrs=unique_targets(args.server_addr),
        listen_addr=args.listen_addr,
        query_timeout=args.query_timeout,
        query_attempts=args.query_attempts,
        scrape_timeout=args.scrape_timeout,
    )
