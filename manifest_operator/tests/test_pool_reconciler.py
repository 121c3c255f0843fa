import asyncio
import json
import unittest
from unittest import mock

from manifest_operator import pool_reconciler, reconciler, status
from manifest_operator.models import v1alpha1 as api
from manifest_operator.tests import fakes
from manifest_operator.workers import JobMode, Response


def response(name = "app", ready = True, error = None):
    return Response(
        key = ("default", "test"),
        chart_name = name,
        ready = ready,
        error = error,
        client_config = {"namespace": "default"},
        overrides = {"replicas": 1}
    )


class FakeOperations:
    def __init__(self, ready = True, error = None):
        self.release_name = "app"
        outcome = {"side_effect": error} if error else {"return_value": ready}
        self.install = mock.AsyncMock(**outcome)
        self.uninstall = mock.AsyncMock(**outcome)
        self.verify = mock.AsyncMock(return_value = ready)


class TestPoolReconciler(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.cluster = fakes.FakeCluster()
        self.options = reconciler.Options(
            api_group = fakes.API_GROUP,
            field_owner = "test",
            finalizer = fakes.FINALIZER
        )
        self.target = fakes.StaticClientResolver(self.cluster)
        self.reconciler = pool_reconciler.PoolReconciler(
            self.cluster,
            self.options,
            2,
            30,
            client_resolver = self.target
        )
        self.operations = FakeOperations()
        self.reconciler.operations_for = mock.Mock(return_value = self.operations)

    async def fetch(self):
        return await self.reconciler.fetch("test", "default")

    async def reconcile(self):
        return await self.reconciler.reconcile(await self.fetch())

    async def wait_for_aggregator(self):
        async def wait():
            while ("default", "test") in self.reconciler._aggregators:
                await asyncio.sleep(0.01)
        await asyncio.wait_for(wait(), 1)

    async def test_all_ready(self):
        self.cluster.add(fakes.manifest_body(state = "Processing"))

        await self.reconciler.handle_responses(("default", "test"), self.target.target, [response()])

        manifest = await self.fetch()
        self.assertEqual(manifest.status.state, api.ManifestState.READY)
        self.assertTrue(status.condition_is_true(manifest, pool_reconciler.CONDITION_MANIFEST))
        self.assertTrue(status.condition_is_true(manifest, "app"))
        self.assertEqual(manifest.status.last_operation.operation, "Manifest in Ready state")
        install = manifest.status.installs["app"]
        self.assertEqual(json.loads(install.client_config), {"namespace": "default"})
        self.assertEqual(json.loads(install.overrides), {"replicas": 1})

    async def test_error_wins(self):
        self.cluster.add(fakes.manifest_body(state = "Processing"))

        await self.reconciler.handle_responses(
            ("default", "test"),
            self.target.target,
            [response("one"), response("two", ready = False, error = RuntimeError("failed"))]
        )

        manifest = await self.fetch()
        self.assertEqual(manifest.status.state, api.ManifestState.ERROR)
        self.assertEqual(
            status.find_condition(manifest, "two").status,
            api.ConditionStatus.FALSE
        )
        self.assertTrue(status.condition_is_true(manifest, "one"))

    async def test_not_ready_is_processing(self):
        self.cluster.add(fakes.manifest_body(state = "Processing"))

        await self.reconciler.handle_responses(
            ("default", "test"),
            self.target.target,
            [response("one"), response("two", ready = False)]
        )

        manifest = await self.fetch()
        self.assertEqual(manifest.status.state, api.ManifestState.PROCESSING)
        self.assertEqual(
            status.find_condition(manifest, "two").status,
            api.ConditionStatus.UNKNOWN
        )

    async def test_deletion_complete_removes_finalizer(self):
        self.cluster.add(fakes.manifest_body(state = "Deleting", deleting = True))

        await self.reconciler.handle_responses(("default", "test"), self.target.target, [response()])

        self.assertIsNone(await self.fetch())

    async def test_deletion_in_progress_stays_deleting(self):
        self.cluster.add(fakes.manifest_body(state = "Deleting", deleting = True))

        await self.reconciler.handle_responses(
            ("default", "test"),
            self.target.target,
            [response(ready = False)]
        )

        manifest = await self.fetch()
        self.assertEqual(manifest.status.state, api.ManifestState.DELETING)
        self.assertEqual(manifest.finalizers, [fakes.FINALIZER])

    async def test_deletion_releases_remote_mirror(self):
        remote = mock.Mock()
        remote.remove_finalizer = mock.AsyncMock()
        self.reconciler.remote = remote
        body = fakes.manifest_body(state = "Deleting", deleting = True)
        body["spec"]["sync"] = {"enabled": True, "kubeconfigSecret": {"name": "kubeconfig"}}
        self.cluster.add(body)

        await self.reconciler.handle_responses(("default", "test"), self.target.target, [response()])

        remote.remove_finalizer.assert_awaited_once()
        self.assertIsNone(await self.fetch())

    async def test_missing_manifest_is_ignored(self):
        await self.reconciler.handle_responses(("default", "test"), self.target.target, [response()])

        self.assertEqual(self.cluster.calls, [])

    async def test_empty_state_moves_to_processing(self):
        self.cluster.add(fakes.manifest_body())

        result = await self.reconcile()

        self.assertEqual(result, reconciler.Result(requeue = True))
        self.assertEqual((await self.fetch()).status.state, api.ManifestState.PROCESSING)

    async def test_processing_installs_through_pool(self):
        self.reconciler.start()
        self.addAsyncCleanup(self.reconciler.stop)
        self.cluster.add(fakes.manifest_body(state = "Processing"))

        result = await self.reconcile()
        await self.wait_for_aggregator()

        self.assertGreater(result.requeue_after, 0)
        self.operations.install.assert_awaited_once()
        job = self.reconciler.operations_for.call_args.args[0]
        self.assertEqual(job.mode, JobMode.CREATE)
        self.assertEqual((await self.fetch()).status.state, api.ManifestState.READY)

    async def test_install_failure_through_pool(self):
        self.operations = FakeOperations(error = RuntimeError("install failed"))
        self.reconciler.operations_for.return_value = self.operations
        self.reconciler.start()
        self.addAsyncCleanup(self.reconciler.stop)
        self.cluster.add(fakes.manifest_body(state = "Processing"))

        await self.reconcile()
        await self.wait_for_aggregator()

        self.assertEqual((await self.fetch()).status.state, api.ManifestState.ERROR)

    async def test_deleting_uninstalls_through_pool(self):
        self.reconciler.start()
        self.addAsyncCleanup(self.reconciler.stop)
        self.cluster.add(fakes.manifest_body(state = "Deleting", deleting = True))

        await self.reconcile()
        await self.wait_for_aggregator()

        self.operations.uninstall.assert_awaited_once()
        self.assertIsNone(await self.fetch())

    async def test_allocation_skipped_while_in_flight(self):
        self.cluster.add(fakes.manifest_body(state = "Processing"))
        self.reconciler._aggregators[("default", "test")] = mock.Mock()
        self.reconciler.pool.submit = mock.AsyncMock()

        await self.reconcile()

        self.reconciler.pool.submit.assert_not_awaited()

    async def test_error_moves_to_processing(self):
        self.cluster.add(fakes.manifest_body(state = "Error"))

        result = await self.reconcile()

        self.assertGreater(result.requeue_after, 0)
        self.assertEqual((await self.fetch()).status.state, api.ManifestState.PROCESSING)

    async def test_ready_verifies_installs(self):
        self.operations.verify.return_value = False
        self.cluster.add(fakes.manifest_body(state = "Ready"))

        await self.reconcile()

        self.operations.verify.assert_awaited_once()
        self.assertEqual((await self.fetch()).status.state, api.ManifestState.PROCESSING)
