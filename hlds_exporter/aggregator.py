# hlds_exporter/aggregator.py
# Этот модуль запускает опрос всех настроенных серверов параллельно и собирает
# результаты в один снимок (MetricSet) не позже общего дедлайна скрейпа.
import asyncio
import logging
import time
from typing import Iterable, Optional, Tuple

from .models import MetricSet, OutcomeKind, QueryOutcome, Target, freeze_metric_set
from .query import DEFAULT_QUERY_ATTEMPTS, DEFAULT_QUERY_TIMEOUT, query_server

logger = logging.getLogger(__name__)

DEFAULT_SCRAPE_TIMEOUT = 5.0 # общий дедлайн скрейпа, секунды


async def collect_metric_set(targets: Iterable[Target], *, deadline: float = DEFAULT_SCRAPE_TIMEOUT,
                             timeout: float = DEFAULT_QUERY_TIMEOUT,
                             attempts: int = DEFAULT_QUERY_ATTEMPTS,
                             local_addr: Optional[Tuple[str, int]] = None) -> MetricSet:
    """
    Опрашивает все серверы одновременно и возвращает снимок результатов.

    Для каждого сервера запускается отдельная задача. По истечении `deadline`
    незавершенные задачи отменяются (их сокеты закрываются), а для их серверов
    записывается TIMEOUT. В результате всегда ровно одна запись на каждый сервер.

    Args:
        targets (Iterable[Target]): Опрашиваемые серверы.
        deadline (float): Общий дедлайн (в секундах).
        timeout (float): Таймаут одной попытки запроса.
        attempts (int): Количество отправок запроса на сервер.
        local_addr (tuple | None): Локальный адрес для UDP-сокетов.

    Returns:
        MetricSet: Неизменяемое отображение Target -> QueryOutcome.
    """
    started = time.monotonic()
    tasks = {}
    for target in targets:
        if target in tasks:
            continue
        tasks[target] = asyncio.create_task(
            query_server(target, timeout=timeout, attempts=attempts, local_addr=local_addr),
            name=f"query-{target}",
        )

    if not tasks:
        return freeze_metric_set({})

    try:
        _done, pending = await asyncio.wait(tasks.values(), timeout=deadline)
    except asyncio.CancelledError:
        # Скрейп отменен целиком (например, клиент разорвал соединение)
        for task in tasks.values():
            task.cancel()
        await asyncio.gather(*tasks.values(), return_exceptions=True)
        raise

    if pending:
        for task in pending:
            task.cancel()
        # Дожидаемся отмены, чтобы блоки finally закрыли сокеты
        await asyncio.gather(*pending, return_exceptions=True)

    outcomes = {}
    for target, task in tasks.items():
        if task in pending:
            outcomes[target] = QueryOutcome.failure(
                OutcomeKind.TIMEOUT, f"scrape deadline of {deadline}s exceeded"
            )
            logger.info(f"Query [{target}]: cancelled at scrape deadline ({deadline}s).")
            continue
        exc = task.exception()
        if exc is not None:
            logger.error(f"Query [{target}]: unexpected error: {exc!r}", exc_info=exc)
            outcomes[target] = QueryOutcome.failure(OutcomeKind.UNREACHABLE, f"unexpected error: {exc}")
            continue
        outcomes[target] = task.result()

    elapsed = time.monotonic() - started
    successes = sum(1 for outcome in outcomes.values() if outcome.is_success)
    logger.debug(f"Scrape collected {len(outcomes)} targets ({successes} up) in {elapsed:.3f}s.")
    return freeze_metric_set(outcomes)
