# tests/unit/test_aggregator.py
# Модульные тесты для агрегатора (hlds_exporter.aggregator.collect_metric_set).
# query_server мокируется, чтобы управлять временем и результатом опроса
# каждого сервера независимо.
import asyncio
import time
import unittest
from unittest.mock import patch

from hlds_exporter.aggregator import collect_metric_set
from hlds_exporter.models import OutcomeKind, QueryOutcome, ServerInfo, Target


def make_info(players=1, bots=0):
    return ServerInfo(
        reply_format="source", protocol=48, name="srv", map="de_dust2", folder="cstrike",
        game="Counter-Strike", players=players, max_players=32, bots=bots, version="1.0",
    )


class TestCollectMetricSet(unittest.IsolatedAsyncioTestCase):
    """
    Набор тестов агрегатора: инвариант "одна запись на сервер", соблюдение
    общего дедлайна и независимость результатов разных серверов.
    """

    async def test_one_entry_per_target_regardless_of_failures(self):
        targets = [Target('10.0.0.1', 27015), Target('10.0.0.2', 27015), Target('10.0.0.3', 27016)]
        outcomes = {
            targets[0]: QueryOutcome.success(make_info(players=4)),
            targets[1]: QueryOutcome.failure(OutcomeKind.MALFORMED_RESPONSE, "bad"),
            targets[2]: QueryOutcome.failure(OutcomeKind.UNREACHABLE, "refused"),
        }

        async def fake_query(target, **kwargs):
            return outcomes[target]

        with patch('hlds_exporter.aggregator.query_server', side_effect=fake_query):
            metric_set = await collect_metric_set(targets, deadline=1.0)

        self.assertEqual(set(metric_set), set(targets))
        self.assertEqual(len(metric_set), 3)
        self.assertIs(metric_set[targets[0]].kind, OutcomeKind.SUCCESS)
        self.assertIs(metric_set[targets[1]].kind, OutcomeKind.MALFORMED_RESPONSE)
        self.assertIs(metric_set[targets[2]].kind, OutcomeKind.UNREACHABLE)

    async def test_passes_query_settings_to_each_task(self):
        target = Target('10.0.0.1', 27015)
        calls = []

        async def fake_query(target, **kwargs):
            calls.append((target, kwargs))
            return QueryOutcome.success(make_info())

        with patch('hlds_exporter.aggregator.query_server', side_effect=fake_query):
            await collect_metric_set([target], deadline=1.0, timeout=0.3, attempts=2, local_addr=('0.0.0.0', 0))

        self.assertEqual(calls, [(target, {'timeout': 0.3, 'attempts': 2, 'local_addr': ('0.0.0.0', 0)})])

    async def test_deadline_cancels_stragglers_and_records_timeout(self):
        fast = Target('10.0.0.1', 27015)
        stuck = Target('10.0.0.2', 27015)
        cleaned_up = asyncio.Event()

        async def fake_query(target, **kwargs):
            if target == fast:
                return QueryOutcome.success(make_info(players=2))
            try:
                await asyncio.sleep(30) # сервер, который никогда не отвечает
            finally:
                cleaned_up.set()

        started = time.monotonic()
        with patch('hlds_exporter.aggregator.query_server', side_effect=fake_query):
            metric_set = await collect_metric_set([fast, stuck], deadline=0.2)
        elapsed = time.monotonic() - started

        self.assertLess(elapsed, 1.0)
        self.assertTrue(cleaned_up.is_set(), "Отмененная задача должна выполнить блок finally")
        self.assertIs(metric_set[fast].kind, OutcomeKind.SUCCESS)
        self.assertEqual(metric_set[fast].info.players, 2)
        self.assertIs(metric_set[stuck].kind, OutcomeKind.TIMEOUT)

    async def test_unexpected_task_error_does_not_abort_other_targets(self):
        good = Target('10.0.0.1', 27015)
        broken = Target('10.0.0.2', 27015)

        async def fake_query(target, **kwargs):
            if target == broken:
                raise RuntimeError("boom")
            return QueryOutcome.success(make_info())

        with patch('hlds_exporter.aggregator.query_server', side_effect=fake_query):
            with self.assertLogs('hlds_exporter.aggregator', level='ERROR'):
                metric_set = await collect_metric_set([good, broken], deadline=1.0)

        self.assertTrue(metric_set[good].is_success)
        self.assertIs(metric_set[broken].kind, OutcomeKind.UNREACHABLE)

    async def test_result_is_read_only_snapshot(self):
        target = Target('10.0.0.1', 27015)

        async def fake_query(target, **kwargs):
            return QueryOutcome.success(make_info())

        with patch('hlds_exporter.aggregator.query_server', side_effect=fake_query):
            first = await collect_metric_set([target], deadline=1.0)
            second = await collect_metric_set([target], deadline=1.0)

        with self.assertRaises(TypeError):
            first[target] = QueryOutcome.failure(OutcomeKind.TIMEOUT)
        self.assertIsNot(first, second)

    async def test_empty_target_list(self):
        metric_set = await collect_metric_set([], deadline=0.1)
        self.assertEqual(len(metric_set), 0)


if __name__ == '__main__':
    unittest.main()
