# hlds_exporter/query.py
# Этот модуль выполняет один полный запрос A2S_INFO к одному серверу:
# отправку запроса, обработку challenge-ответа, повторные попытки по таймауту
# и классификацию результата (QueryOutcome). Каждый запрос использует
# собственный UDP-сокет, который закрывается при любом исходе.
import asyncio
import ipaddress
import logging
from typing import Optional, Tuple

from .models import OutcomeKind, QueryOutcome, Target
from .protocol import MalformedResponseError, PacketKind, decode_response, encode_info_request

logger = logging.getLogger(__name__)

DEFAULT_QUERY_TIMEOUT = 1.0 # секунды ожидания ответа на одну попытку
DEFAULT_QUERY_ATTEMPTS = 3 # всего отправок запроса на один сервер

WILDCARD_HOSTS = {4: '0.0.0.0', 6: '::'}


class QueryProtocol(asyncio.DatagramProtocol):
    """
    Протокол UDP-сокета одного запроса.

    Складывает полученные датаграммы и ошибки транспорта в очередь, из которой
    их читает `query_server`. Сокет подключен к адресу цели, поэтому датаграммы
    с других адресов сюда не попадают.
    """
    def __init__(self, target: Target):
        super().__init__()
        self.target = target
        self.transport = None
        self.datagrams: asyncio.Queue = asyncio.Queue()

    def connection_made(self, transport):
        self.transport = transport
        logger.debug(f"Query socket for {self.target} opened on {transport.get_extra_info('sockname')}")

    def datagram_received(self, data: bytes, addr: tuple):
        logger.debug(f"Query [{self.target}]: received {len(data)} bytes from {addr}")
        self.datagrams.put_nowait(data)

    def error_received(self, exc: Exception):
        # Например, ICMP port unreachable приходит сюда как ConnectionRefusedError
        logger.debug(f"Query [{self.target}]: transport error: {exc!r}")
        self.datagrams.put_nowait(exc)

    def connection_lost(self, exc: Optional[Exception]):
        if exc is not None:
            self.datagrams.put_nowait(exc)


def local_bind_addr(target: Target, local_addr: Optional[Tuple[str, int]]) -> Optional[Tuple[str, int]]:
    """
    Адрес привязки UDP-сокета одного запроса.

    Порт всегда 0: каждый запрос получает собственный эфемерный порт, поэтому
    одновременные запросы (в том числе из пересекающихся скрейпов) не
    конкурируют за один порт. Если цель задана IP-литералом, а локальный адрес
    wildcard, берется wildcard того же семейства адресов.
    """
    if local_addr is None:
        return None
    host = local_addr[0]
    if host in WILDCARD_HOSTS.values():
        try:
            host = WILDCARD_HOSTS[ipaddress.ip_address(target.host).version]
        except ValueError:
            pass # имя хоста, семейство определится при разрешении
    return host, 0


async def _exchange(transport, protocol: QueryProtocol, target: Target,
                    timeout: float, attempts: int) -> QueryOutcome:
    """
    Конечный автомат запроса.

    На каждую попытку допускается не более одного challenge-обмена. Повторная
    попытка отправляет тот же запрос, включая полученный ранее токен.
    """
    request = encode_info_request()
    for attempt in range(1, attempts + 1):
        challenged = False
        try:
            transport.sendto(request)
        except OSError as e:
            return QueryOutcome.failure(OutcomeKind.UNREACHABLE, f"send failed: {e}")

        while True:
            try:
                item = await asyncio.wait_for(protocol.datagrams.get(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.debug(f"Query [{target}]: no reply within {timeout}s (attempt {attempt}/{attempts}).")
                break

            if isinstance(item, Exception):
                return QueryOutcome.failure(OutcomeKind.UNREACHABLE, f"transport error: {item}")

            try:
                packet = decode_response(item)
            except MalformedResponseError as e:
                return QueryOutcome.failure(OutcomeKind.MALFORMED_RESPONSE, str(e))

            if packet.kind is PacketKind.INFO:
                return QueryOutcome.success(packet.info)

            if challenged:
                return QueryOutcome.failure(
                    OutcomeKind.CHALLENGE_LOOP,
                    f"second challenge within attempt {attempt}",
                )
            challenged = True
            logger.debug(f"Query [{target}]: challenge {packet.challenge.hex()} received, resending request.")
            request = encode_info_request(packet.challenge)
            try:
                transport.sendto(request)
            except OSError as e:
                return QueryOutcome.failure(OutcomeKind.UNREACHABLE, f"send failed: {e}")

    return QueryOutcome.failure(OutcomeKind.TIMEOUT, f"no reply after {attempts} attempts")


async def query_server(target: Target, *, timeout: float = DEFAULT_QUERY_TIMEOUT,
                       attempts: int = DEFAULT_QUERY_ATTEMPTS,
                       local_addr: Optional[Tuple[str, int]] = None) -> QueryOutcome:
    """
    Выполняет запрос A2S_INFO к одному серверу.

    Ошибки сети и протокола не выбрасываются наружу, а превращаются в
    QueryOutcome. Наружу может выйти только asyncio.CancelledError, если задачу
    отменил агрегатор; сокет при этом все равно закрывается.

    Args:
        target (Target): Опрашиваемый сервер.
        timeout (float): Время ожидания ответа на одну попытку (в секундах).
        attempts (int): Общее количество отправок запроса.
        local_addr (tuple | None): Локальный адрес для привязки UDP-сокета; порт
            игнорируется, см. local_bind_addr.

    Returns:
        QueryOutcome: Результат опроса.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")

    loop = asyncio.get_running_loop()
    try:
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: QueryProtocol(target),
            remote_addr=(target.host, target.port),
            local_addr=local_bind_addr(target, local_addr),
        )
    except (OSError, ValueError) as e:
        # OSError включает socket.gaierror; ValueError означает, что у цели и
        # локального адреса нет общего семейства адресов
        outcome = QueryOutcome.failure(OutcomeKind.UNREACHABLE, f"cannot open socket: {e}")
        logger.warning(f"Query [{target}]: {outcome.detail}")
        return outcome

    try:
        outcome = await _exchange(transport, protocol, target, timeout, attempts)
    finally:
        transport.close()

    if outcome.is_success:
        logger.debug(f"Query [{target}]: success, players={outcome.info.players}, bots={outcome.info.bots}, map='{outcome.info.map}'.")
    elif outcome.kind is OutcomeKind.TIMEOUT:
        logger.info(f"Query [{target}]: timeout ({outcome.detail}).")
    else:
        logger.warning(f"Query [{target}]: {outcome.kind.value} ({outcome.detail}).")
    return outcome
