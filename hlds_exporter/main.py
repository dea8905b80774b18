# hlds_exporter/main.py
# Точка входа экспортера: загрузка .env, разбор конфигурации, настройка
# логирования и запуск HTTP-сервера метрик.
import asyncio
import logging
import sys
from typing import List, Optional

import structlog
from aiohttp import web
from dotenv import load_dotenv

from .config import ExporterConfig, load_config
from .http_handler import create_app

logger = structlog.get_logger(__name__)

LOG_LEVEL_ALIASES = {'TRACE': 'DEBUG', 'WARN': 'WARNING'}

SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.CallsiteParameterAdder({
        structlog.processors.CallsiteParameter.MODULE,
        structlog.processors.CallsiteParameter.FUNC_NAME,
        structlog.processors.CallsiteParameter.LINENO,
    }),
]


def build_formatter(log_format: str = 'console') -> structlog.stdlib.ProcessorFormatter:
    """
    Создает форматтер, который пропускает записи стандартного logging через
    цепочку процессоров structlog и выводит их как JSON или как строку консоли.
    """
    if log_format == 'json':
        renderers = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=False)]

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=SHARED_PROCESSORS,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )


def setup_logging(level: str, log_format: str = 'console') -> None:
    """
    Настраивает логирование: вывод в stderr, консольный или JSON формат.

    Модули пакета пишут через стандартный logging, точка входа через structlog;
    оба потока проходят через один ProcessorFormatter. Уровень OFF отключает
    логирование, TRACE соответствует DEBUG.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(build_formatter(log_format))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    structlog.configure(
        processors=SHARED_PROCESSORS + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if level == 'OFF':
        logging.disable(logging.CRITICAL)
        return
    logging.disable(logging.NOTSET)
    root.setLevel(LOG_LEVEL_ALIASES.get(level, level))


async def serve(config: ExporterConfig) -> None:
    """
    Запускает HTTP-сервер метрик и работает до отмены.

    OSError при привязке адреса (например, порт занят) передается вызывающему.
    """
    runner = web.AppRunner(create_app(config))
    await runner.setup()
    try:
        host, port = config.metrics_addr
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info(
            "Metrics server listening.",
            url=f"http://{host}:{port}{config.metrics_path}",
            servers=len(config.server_addrs),
        )
        await asyncio.Event().wait()
    finally:
        logger.info("Stopping metrics server...")
        await runner.cleanup()


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    config = load_config(argv)
    setup_logging(config.log_level, config.log_format)
    config.log()

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Exporter shutdown requested via KeyboardInterrupt.")
    except OSError as e:
        logger.critical("Failed to start metrics server (e.g., port binding issue).", error=str(e), exc_info=True)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
