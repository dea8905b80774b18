# hlds_exporter/models.py
# Этот модуль определяет модели данных экспортера: адрес опрашиваемого сервера (Target),
# разобранный ответ A2S_INFO (ServerInfo), результат опроса одного сервера (QueryOutcome)
# и снимок результатов одного скрейпа (MetricSet).
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

DEFAULT_QUERY_PORT = 27015 # Стандартный порт запросов HLDS/SRCDS


@dataclass(frozen=True)
class Target:
    """
    Адрес одного игрового сервера.

    Неизменяем в течение жизни процесса. Строка `address` используется как
    значение метки `addr` во всех метриках этого сервера.
    """
    host: str
    port: int = DEFAULT_QUERY_PORT

    @property
    def address(self) -> str:
        if ':' in self.host: # IPv6-литерал
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def __str__(self):
        return self.address

    @classmethod
    def parse(cls, value: str) -> "Target":
        """
        Разбирает строку вида `host`, `host:port` или `[ipv6]:port`.

        Raises:
            ValueError: если строка пуста или порт некорректен.
        """
        value = value.strip()
        if not value:
            raise ValueError("empty server address")

        port_str = None
        if value.startswith('['):
            host, sep, rest = value[1:].partition(']')
            if not sep or not host:
                raise ValueError(f"invalid IPv6 server address: {value!r}")
            if rest:
                if not rest.startswith(':'):
                    raise ValueError(f"invalid server address: {value!r}")
                port_str = rest[1:]
        elif value.count(':') == 1:
            host, _, port_str = value.partition(':')
        else:
            # Либо имя без порта, либо IPv6 без скобок
            host = value

        if not host:
            raise ValueError(f"missing host in server address: {value!r}")
        if port_str is None:
            return cls(host=host)
        try:
            port = int(port_str)
        except ValueError:
            raise ValueError(f"invalid port in server address: {value!r}") from None
        if not 0 < port < 65536:
            raise ValueError(f"port out of range in server address: {value!r}")
        return cls(host=host, port=port)


@dataclass(frozen=True)
class ServerInfo:
    """
    Разобранный ответ A2S_INFO.

    Все поля берутся как есть из ответа сервера, без семантической проверки.
    `players` включает ботов. У ответов формата GoldSrc нет строки версии,
    поэтому `version` в этом случае пустая.
    """
    reply_format: str
    protocol: int
    name: str
    map: str
    folder: str
    game: str
    players: int
    max_players: int
    bots: int
    version: str = ""
    server_type: str = ""
    environment: str = ""
    visibility: int = 0
    vac: int = 0


class OutcomeKind(Enum):
    """Вид результата опроса одного сервера за один скрейп."""
    SUCCESS = "success"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    MALFORMED_RESPONSE = "malformed_response"
    CHALLENGE_LOOP = "challenge_loop"


@dataclass(frozen=True)
class QueryOutcome:
    """
    Результат опроса одного сервера.

    Ровно один результат на сервер за скрейп. `info` заполнено только для
    SUCCESS, `detail` содержит пояснение для логов.
    """
    kind: OutcomeKind
    info: Optional[ServerInfo] = None
    detail: str = ""

    @property
    def is_success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(cls, info: ServerInfo) -> "QueryOutcome":
        return cls(kind=OutcomeKind.SUCCESS, info=info)

    @classmethod
    def failure(cls, kind: OutcomeKind, detail: str = "") -> "QueryOutcome":
        if kind is OutcomeKind.SUCCESS:
            raise ValueError("failure outcome cannot be SUCCESS")
        return cls(kind=kind, detail=detail)


# Снимок результатов одного скрейпа: только для чтения, собирается заново каждый раз.
MetricSet = Mapping[Target, QueryOutcome]


def freeze_metric_set(outcomes: dict) -> MetricSet:
    """Возвращает неизменяемое представление копии словаря результатов."""
    return MappingProxyType(dict(outcomes))
