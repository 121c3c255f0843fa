import asyncio
import unittest

from manifest_operator import workers
from manifest_operator.models import v1alpha1 as api
from manifest_operator.resolver import ResolvedInstall


def job(name, responses, mode = workers.JobMode.CREATE):
    return workers.Job(
        key = ("default", "test"),
        install = ResolvedInstall(
            name = name,
            source = api.InstallSource(type = "raw", path = "/manifests")
        ),
        namespace = "default",
        target = None,
        mode = mode,
        responses = responses
    )


class TestWorkerPool(unittest.IsolatedAsyncioTestCase):
    async def start_pool(self, handler, size = 2):
        pool = workers.WorkerPool(size, handler)
        pool.start()
        self.addAsyncCleanup(pool.stop)
        return pool

    async def test_each_job_produces_one_response(self):
        async def handler(job):
            await asyncio.sleep(0)
            return workers.Response(key = job.key, chart_name = job.install.name, ready = True)

        pool = await self.start_pool(handler)
        responses = asyncio.Queue(maxsize = 5)
        for index in range(5):
            await pool.submit(job(f"install-{index}", responses))

        collected = await asyncio.wait_for(workers.collect_responses(responses, 5), 1)

        self.assertEqual(
            sorted(r.chart_name for r in collected),
            [f"install-{index}" for index in range(5)]
        )
        self.assertTrue(all(r.ready for r in collected))
        self.assertTrue(responses.empty())

    async def test_handler_failure_produces_error_response(self):
        async def handler(job):
            raise RuntimeError("handler failed")

        pool = await self.start_pool(handler, size = 1)
        responses = asyncio.Queue(maxsize = 1)
        await pool.submit(job("app", responses))

        [response] = await asyncio.wait_for(workers.collect_responses(responses, 1), 1)

        self.assertFalse(response.ready)
        self.assertIsInstance(response.error, RuntimeError)
        self.assertEqual(response.chart_name, "app")

    async def test_workers_are_bounded(self):
        running = 0
        peak = 0

        async def handler(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return workers.Response(key = job.key, chart_name = job.install.name, ready = True)

        pool = await self.start_pool(handler, size = 2)
        responses = asyncio.Queue(maxsize = 6)
        for index in range(6):
            await pool.submit(job(f"install-{index}", responses))

        await asyncio.wait_for(workers.collect_responses(responses, 6), 1)

        self.assertLessEqual(peak, 2)

    async def test_collect_responses_can_be_cancelled(self):
        responses = asyncio.Queue(maxsize = 2)
        task = asyncio.create_task(workers.collect_responses(responses, 2))
        await responses.put(workers.Response(key = ("default", "test"), chart_name = "app"))
        await asyncio.sleep(0)

        task.cancel()

        with self.assertRaises(asyncio.CancelledError):
            await task
