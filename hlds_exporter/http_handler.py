# hlds_exporter/http_handler.py
# Этот модуль определяет HTTP-приложение aiohttp с эндпоинтом метрик.
# Каждый запрос к эндпоинту заново опрашивает все серверы: кэша результатов
# и фонового опроса нет.
import logging
import time

from aiohttp import web

from .aggregator import collect_metric_set
from .config import ExporterConfig
from .metrics import build_registry, render

logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey('config', ExporterConfig)


async def handle_metrics(request: web.Request) -> web.Response:
    """
    Обрабатывает один скрейп.

    Время ответа ограничено общим дедлайном агрегатора (scrape_timeout).
    """
    config = request.app[CONFIG_KEY]
    started = time.monotonic()

    metric_set = await collect_metric_set(
        config.server_addrs,
        deadline=config.scrape_timeout,
        timeout=config.query_timeout,
        attempts=config.query_attempts,
        local_addr=config.listen_addr,
    )
    body, content_type = render(build_registry(metric_set), request.headers.get('Accept', ''))

    logger.debug(
        f"Scrape {request.path} from {request.remote} served in {time.monotonic() - started:.3f}s "
        f"({len(metric_set)} targets)."
    )
    # aiohttp не принимает charset в content_type, поэтому заголовок задается напрямую
    return web.Response(body=body, headers={'Content-Type': content_type})


def create_app(config: ExporterConfig) -> web.Application:
    """Создает приложение; запросы к другим путям получают 404 от aiohttp."""
    app = web.Application()
    app[CONFIG_KEY] = config
    app.router.add_get(config.metrics_path, handle_metrics)
    return app
