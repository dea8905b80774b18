# hlds_exporter/protocol.py
# Этот модуль реализует кодирование запроса A2S_INFO и разбор ответов сервера:
# challenge-ответа (S2C_CHALLENGE), ответа в формате Source (S2A_INFO) и
# устаревшего ответа в формате GoldSrc. Модуль не выполняет ввода-вывода.
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .models import ServerInfo

MAX_REPLY_SIZE = 1400 # Максимальный размер одиночного UDP-пакета ответа

HEADER = b'\xFF\xFF\xFF\xFF' # Преамбула одиночного пакета
SPLIT_HEADER = b'\xFE\xFF\xFF\xFF' # Преамбула многопакетного ответа (не поддерживается)

A2S_INFO = 0x54 # 'T'
S2C_CHALLENGE = 0x41 # 'A'
S2A_INFO = 0x49 # 'I', формат Source
S2A_INFO_GOLDSRC = 0x6D # 'm', устаревший формат GoldSrc

A2S_INFO_PAYLOAD = b'Source Engine Query\x00'
CHALLENGE_LENGTH = 4

_BYTE = struct.Struct('<B')
_CHALLENGE = struct.Struct('<4s')
_SOURCE_APP_ID_AND_COUNTERS = struct.Struct('<hBBB') # app id, players, max players, bots
_SOURCE_FLAGS = struct.Struct('<ccBB') # server type, environment, visibility, vac
_GOLDSRC_COUNTERS = struct.Struct('<BBB') # players, max players, protocol
_GOLDSRC_FLAGS = struct.Struct('<ccBB') # server type, environment, visibility, mod
_GOLDSRC_MOD_TAIL = struct.Struct('<xiiBB') # null, version, size, type, dll
_GOLDSRC_TAIL = struct.Struct('<BB') # vac, bots


class MalformedResponseError(ValueError):
    """Ответ сервера структурно некорректен или имеет неизвестный тип."""


class PacketKind(Enum):
    CHALLENGE = "challenge"
    INFO = "info"


@dataclass(frozen=True)
class DecodedPacket:
    """
    Разобранный пакет ответа.

    Для CHALLENGE заполнено поле `challenge` (4 байта), для INFO поле `info`.
    """
    kind: PacketKind
    challenge: Optional[bytes] = None
    info: Optional[ServerInfo] = None


def encode_info_request(challenge: Optional[bytes] = None) -> bytes:
    """
    Формирует запрос A2S_INFO.

    Args:
        challenge (bytes | None): Токен из challenge-ответа сервера. Добавляется
                                  в конец запроса как есть (4 байта, little-endian).

    Returns:
        bytes: Готовая к отправке датаграмма.
    """
    request = HEADER + bytes((A2S_INFO,)) + A2S_INFO_PAYLOAD
    if challenge is None:
        return request
    if len(challenge) != CHALLENGE_LENGTH:
        raise ValueError(f"challenge token must be {CHALLENGE_LENGTH} bytes, got {len(challenge)}")
    return request + _CHALLENGE.pack(challenge)


class _Reader:
    """Последовательное чтение полей из буфера ответа с контролем длины."""

    def __init__(self, data: bytes, offset: int):
        self.data = data
        self.offset = offset

    def unpack(self, fmt: struct.Struct) -> tuple:
        if self.offset + fmt.size > len(self.data):
            raise MalformedResponseError(
                f"reply truncated at offset {self.offset}: need {fmt.size} more bytes, have {len(self.data) - self.offset}"
            )
        values = fmt.unpack_from(self.data, self.offset)
        self.offset += fmt.size
        return values

    def cstring(self) -> str:
        try:
            end = self.data.index(b'\x00', self.offset)
        except ValueError:
            raise MalformedResponseError(f"unterminated string at offset {self.offset}") from None
        value = self.data[self.offset:end].decode('utf-8', errors='replace')
        self.offset = end + 1
        return value


def _decode_char(value: bytes) -> str:
    return value.decode('latin-1')


def _decode_source_info(reader: _Reader) -> ServerInfo:
    (protocol,) = reader.unpack(_BYTE)
    name = reader.cstring()
    map_name = reader.cstring()
    folder = reader.cstring()
    game = reader.cstring()
    _app_id, players, max_players, bots = reader.unpack(_SOURCE_APP_ID_AND_COUNTERS)
    server_type, environment, visibility, vac = reader.unpack(_SOURCE_FLAGS)
    version = reader.cstring()
    # Extra Data Flag и следующие за ним поля не нужны для метрик
    return ServerInfo(
        reply_format="source",
        protocol=protocol,
        name=name,
        map=map_name,
        folder=folder,
        game=game,
        players=players,
        max_players=max_players,
        bots=bots,
        version=version,
        server_type=_decode_char(server_type),
        environment=_decode_char(environment),
        visibility=visibility,
        vac=vac,
    )


def _decode_goldsrc_info(reader: _Reader) -> ServerInfo:
    reader.cstring() # адрес сервера, дублирует адрес цели
    name = reader.cstring()
    map_name = reader.cstring()
    folder = reader.cstring()
    game = reader.cstring()
    players, max_players, protocol = reader.unpack(_GOLDSRC_COUNTERS)
    server_type, environment, visibility, mod = reader.unpack(_GOLDSRC_FLAGS)
    if mod == 1:
        reader.cstring() # ссылка на сайт мода
        reader.cstring() # ссылка на загрузку мода
        reader.unpack(_GOLDSRC_MOD_TAIL)
    vac, bots = reader.unpack(_GOLDSRC_TAIL)
    return ServerInfo(
        reply_format="goldsrc",
        protocol=protocol,
        name=name,
        map=map_name,
        folder=folder,
        game=game,
        players=players,
        max_players=max_players,
        bots=bots,
        server_type=_decode_char(server_type),
        environment=_decode_char(environment),
        visibility=visibility,
        vac=vac,
    )


def decode_response(data: bytes) -> DecodedPacket:
    """
    Разбирает датаграмму, полученную от сервера.

    Распознаются challenge-ответ и ответ A2S_INFO в форматах Source и GoldSrc.
    Байты после последнего нужного поля игнорируются, чтобы расширенные форматы
    ответа не считались ошибкой.

    Args:
        data (bytes): Полученная датаграмма целиком.

    Returns:
        DecodedPacket: Разобранный пакет.

    Raises:
        MalformedResponseError: неверная преамбула, неизвестный тип ответа,
                                недостаточная длина или незавершенная строка.
    """
    if data.startswith(SPLIT_HEADER):
        raise MalformedResponseError("split packet replies are not supported")
    if not data.startswith(HEADER):
        raise MalformedResponseError(f"invalid packet header: {data[:4]!r}")
    if len(data) <= len(HEADER):
        raise MalformedResponseError("packet without response type")

    marker = data[len(HEADER)]
    reader = _Reader(data, len(HEADER) + 1)

    if marker == S2C_CHALLENGE:
        (challenge,) = reader.unpack(_CHALLENGE)
        return DecodedPacket(kind=PacketKind.CHALLENGE, challenge=challenge)
    if marker == S2A_INFO:
        return DecodedPacket(kind=PacketKind.INFO, info=_decode_source_info(reader))
    if marker == S2A_INFO_GOLDSRC:
        return DecodedPacket(kind=PacketKind.INFO, info=_decode_goldsrc_info(reader))
    raise MalformedResponseError(f"unknown response type 0x{marker:02X}")
