# hlds_exporter/metrics.py
# Этот модуль определяет метрики Prometheus экспортера и заполняет их
# из снимка результатов скрейпа (MetricSet).
# Реестр создается заново на каждый скрейп: между скрейпами состояние не хранится.

from prometheus_client import CollectorRegistry, Gauge, generate_latest # Импортируем типы метрик из библиотеки Prometheus
from prometheus_client.openmetrics.exposition import (
    CONTENT_TYPE_LATEST as OPENMETRICS_CONTENT_TYPE,
    generate_latest as generate_openmetrics,
)

from .models import MetricSet

CONTENT_TYPE_TEXT = 'text/plain; version=0.0.4; charset=utf-8'


def build_registry(metric_set: MetricSet) -> CollectorRegistry:
    """
    Создает новый реестр и заполняет его метриками по каждому серверу.

    hlds_up выставляется для каждого сервера всегда. hlds_info, hlds_players и
    hlds_bots выставляются только при успешном опросе: у неудачного опроса нет
    достоверных значений, поэтому нули не подставляются.
    """
    registry = CollectorRegistry()

    # Gauge с информацией о сервере, значение всегда 1
    info = Gauge(
        'hlds_info',
        'server info.',
        ['name', 'addr', 'game', 'version'],
        registry=registry,
    )
    players = Gauge(
        'hlds_players',
        'current number of players.',
        ['addr'],
        registry=registry,
    )
    bots = Gauge(
        'hlds_bots',
        'current number of bots.',
        ['addr'],
        registry=registry,
    )
    up = Gauge(
        'hlds_up',
        'server is up.',
        ['addr'],
        registry=registry,
    )

    for target, outcome in metric_set.items():
        addr = target.address
        if outcome.is_success:
            server_info = outcome.info
            info.labels(
                name=server_info.name,
                addr=addr,
                game=server_info.game,
                version=server_info.version,
            ).set(1)
            players.labels(addr=addr).set(server_info.players)
            bots.labels(addr=addr).set(server_info.bots)
            up.labels(addr=addr).set(1)
        else:
            up.labels(addr=addr).set(0)

    return registry


def render(registry: CollectorRegistry, accept_header: str = '') -> tuple:
    """
    Сериализует реестр в формат экспозиции.

    По умолчанию используется текстовый формат Prometheus 0.0.4; если скрейпер
    запрашивает OpenMetrics через заголовок Accept, используется он.

    Returns:
        tuple[bytes, str]: Тело ответа и значение заголовка Content-Type.
    """
    for accepted in accept_header.split(','):
        if accepted.split(';')[0].strip() == 'application/openmetrics-text':
            return generate_openmetrics(registry), OPENMETRICS_CONTENT_TYPE
    return generate_latest(registry), CONTENT_TYPE_TEXT
