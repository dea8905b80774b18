# tests/helpers.py
# Вспомогательные функции для тестов: сборка пакетов ответов A2S и
# поддельный игровой сервер на локальном UDP-сокете.
import asyncio
import struct

HEADER = b'\xFF\xFF\xFF\xFF'
INFO_REQUEST = HEADER + b'TSource Engine Query\x00'


def cstr(value: str) -> bytes:
    return value.encode('utf-8') + b'\x00'


def build_source_info(name="TestServer", map_name="de_dust2", folder="cstrike",
                      game="Counter-Strike", players=5, max_players=32, bots=2,
                      version="1.1.2.7/Stdio", protocol=48, app_id=10, extra=b''):
    """Собирает ответ S2A_INFO в формате Source."""
    return (
        HEADER + b'I' + bytes((protocol,))
        + cstr(name) + cstr(map_name) + cstr(folder) + cstr(game)
        + struct.pack('<hBBB', app_id, players, max_players, bots)
        + b'dl' + bytes((0, 1))
        + cstr(version)
        + extra
    )


def build_goldsrc_info(address="127.0.0.1:27015", name="Old Server", map_name="crossfire",
                       folder="valve", game="Half-Life", players=3, max_players=16,
                       protocol=47, mod=False, bots=1):
    """Собирает устаревший ответ GoldSrc (тип 'm')."""
    packet = (
        HEADER + b'm'
        + cstr(address) + cstr(name) + cstr(map_name) + cstr(folder) + cstr(game)
        + bytes((players, max_players, protocol))
        + b'dl' + bytes((0, 1 if mod else 0))
    )
    if mod:
        packet += cstr("http://mod.example") + cstr("http://dl.example") + b'\x00'
        packet += struct.pack('<iiBB', 1, 1024, 0, 1)
    return packet + bytes((1, bots))


def build_challenge(token: bytes) -> bytes:
    return HEADER + b'A' + token


class FakeA2SServer(asyncio.DatagramProtocol):
    """
    Поддельный сервер: на каждый запрос вызывает handler(request) и отправляет
    обратно все возвращенные им пакеты.
    """
    def __init__(self, handler):
        self.handler = handler
        self.requests = []
        self.peers = []
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.requests.append(data)
        self.peers.append(addr)
        for reply in self.handler(data):
            self.transport.sendto(reply, addr)


async def start_fake_server(handler):
    """Запускает FakeA2SServer на 127.0.0.1 и возвращает (transport, server, port)."""
    loop = asyncio.get_running_loop()
    transport, server = await loop.create_datagram_endpoint(
        lambda: FakeA2SServer(handler),
        local_addr=('127.0.0.1', 0),
    )
    port = transport.get_extra_info('sockname')[1]
    return transport, server, port


def reply_with(*packets):
    return lambda request: list(packets)


def silent(request):
    return []


def challenge_then_info(token: bytes, info_packet: bytes):
    """Отвечает challenge на запрос без токена и info на запрос с правильным токеном."""
    def handler(request):
        if request == INFO_REQUEST + token:
            return [info_packet]
        return [build_challenge(token)]
    return handler


def always_challenge():
    """Каждый раз выдает новый токен и никогда не отвечает info."""
    counter = {'n': 0}

    def handler(request):
        counter['n'] += 1
        return [build_challenge(struct.pack('<I', counter['n']))]
    return handler
