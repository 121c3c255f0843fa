import asyncio
import json
import logging

import pyhelm3

from . import errors, render, status, sync
from .models import v1alpha1 as api
from .reconciler import Reconciler, Result
from .resources import ResourceToInfoConverter
from .utils import jitter
from .workers import JobMode, Job, Response, WorkerPool, collect_responses


logger = logging.getLogger(__name__)


#: The type of the condition that reflects the manifest as a whole
CONDITION_MANIFEST = api.Manifest._meta.kind


class ChartOperations:
    """
    Installs and uninstalls a single install on a target cluster.
    """
    def __init__(self, job, ready_check, kustomize_executable = "kustomize"):
        self.job = job
        self.target = job.target
        self.ready_check = ready_check
        self.kustomize_executable = kustomize_executable

    @property
    def release_name(self):
        return self.job.install.name

    @property
    def is_chart(self):
        return self.job.install.source.type == api.SourceType.HELM_CHART

    async def _ready(self, objects):
        converter = ResourceToInfoConverter(self.target.ekclient, self.job.namespace)
        infos = await converter.objects_to_infos(objects)
        try:
            await self.ready_check.run(infos)
        except errors.ResourcesNotReady:
            return False
        else:
            return True

    async def _get_chart(self):
        source = self.job.install.source
        return await self.target.helm_client.get_chart(
            source.chart_name,
            repo = source.url,
            version = source.version
        )

    async def _rendered_infos(self):
        renderer = render.renderer_for(
            None,
            self.job.install,
            self.job.namespace,
            self.target,
            kustomize_executable = self.kustomize_executable
        )
        renderer.initialize(None)
        objects = render.parse_manifest(await renderer.render(None))
        converter = ResourceToInfoConverter(self.target.ekclient, self.job.namespace)
        return await converter.objects_to_infos(objects)

    async def install(self):
        """
        Installs or upgrades the install and returns true if it is ready.
        """
        if self.is_chart:
            revision = await self.target.helm_client.install_or_upgrade_release(
                self.release_name,
                await self._get_chart(),
                self.job.install.values,
                namespace = self.job.namespace,
                create_namespace = self.target.options.create_namespace
            )
            return await self._ready(list(await revision.resources()))
        infos = await self._rendered_infos()
        await sync.ConcurrentApply(
            self.target.ekclient,
            self.target.options.field_owner
        ).run(infos)
        return await self._ready([info.object for info in infos])

    async def verify(self):
        """
        Returns true if the install is present and ready, without changing it.
        """
        if self.is_chart:
            try:
                revision = await self.target.helm_client.get_current_revision(
                    self.release_name,
                    namespace = self.job.namespace
                )
            except pyhelm3.errors.ReleaseNotFoundError:
                return False
            return await self._ready(list(await revision.resources()))
        infos = await self._rendered_infos()
        return await self._ready([info.object for info in infos])

    async def uninstall(self):
        """
        Uninstalls the install and returns true if it is completely removed.
        """
        if self.is_chart:
            try:
                await self.target.helm_client.uninstall_release(
                    self.release_name,
                    namespace = self.job.namespace
                )
            except pyhelm3.errors.ReleaseNotFoundError:
                return True
            # Confirm that the release is gone on the next attempt
            return False
        infos = await self._rendered_infos()
        try:
            await sync.ConcurrentCleanup(self.target.ekclient).run(infos)
        except errors.DeletionNotFinished:
            return False
        else:
            return True


class PoolReconciler(Reconciler):
    """
    Reconciles manifests by submitting a job per install to a worker pool.

    A background aggregator collects the responses for each reconciliation and
    decides the next state of the manifest.
    """
    def __init__(
        self,
        ekclient,
        options,
        pool_size,
        failure_interval,
        remote = None,
        **kwargs
    ):
        super().__init__(ekclient, options, **kwargs)
        self.pool = WorkerPool(pool_size, self.handle_job)
        self.failure_interval = failure_interval
        self.remote = remote
        # The running aggregator for each manifest
        self._aggregators = {}

    def start(self):
        self.pool.start()

    async def stop(self):
        aggregators, self._aggregators = list(self._aggregators.values()), {}
        for task in aggregators:
            task.cancel()
        await asyncio.gather(*aggregators, return_exceptions = True)
        await self.pool.stop()

    def on_failure(self):
        return Result(requeue_after = jitter(self.failure_interval))

    def operations_for(self, job):
        return ChartOperations(
            job,
            self.ready_check(job.target),
            self.options.kustomize_executable
        )

    async def handle_job(self, job):
        """
        Performs a single job and returns the response.
        """
        operations = self.operations_for(job)
        response = Response(
            key = job.key,
            chart_name = job.install.name,
            client_config = {
                "namespace": job.namespace,
                "releaseName": operations.release_name,
                "createNamespace": job.target.options.create_namespace,
            },
            overrides = job.install.values
        )
        try:
            if job.mode == JobMode.CREATE:
                response.ready = await operations.install()
            else:
                response.ready = await operations.uninstall()
        except Exception as exc:
            logger.warning("%s of %s for %s failed: %s", job.mode.value, job.install.name, job.key, exc)
            response.error = exc
        return response

    async def update_status(self, manifest, state, message):
        """
        Sets the state and the overall condition, then saves the status.
        """
        status.set_state(manifest, state, message)
        if state == api.ManifestState.READY:
            condition_status = api.ConditionStatus.TRUE
        else:
            condition_status = api.ConditionStatus.FALSE
        status.set_condition(manifest, CONDITION_MANIFEST, condition_status, state.value, message)
        await self.save_status(manifest)

    def record_responses(self, manifest, responses):
        for response in responses:
            if response.error is not None:
                condition_status, message = api.ConditionStatus.FALSE, "installation error"
            elif not response.ready:
                condition_status, message = api.ConditionStatus.UNKNOWN, "installation processing"
            else:
                condition_status, message = api.ConditionStatus.TRUE, "installation successful"
            status.set_condition(manifest, response.chart_name, condition_status, None, message)
            manifest.status.installs[response.chart_name] = api.InstallStatus(
                chart_name = response.chart_name,
                client_config = json.dumps(response.client_config, sort_keys = True),
                overrides = json.dumps(response.overrides, sort_keys = True, default = str)
            )

    async def handle_responses(self, key, target, responses):
        """
        Decides the next state of the manifest from the responses for its installs.
        """
        error_state = any(r.error is not None for r in responses)
        processing = any(r.error is None and not r.ready for r in responses)
        # Refetch so that status written since the jobs were submitted is kept
        namespace, name = key
        manifest = await self.fetch(name, namespace)
        if manifest is None:
            logger.info("manifest %s/%s no longer exists", *key)
            return
        self.record_responses(manifest, responses)
        if manifest.deleting and not error_state and not processing:
            try:
                if self.remote and manifest.spec.sync.enabled:
                    await self.remote.remove_finalizer(target.ekclient, manifest)
                await self.remove_finalizer(manifest)
            except Exception:
                logger.exception("failed to release %s", manifest)
                error_state = True
            else:
                return
        if error_state:
            end_state = api.ManifestState.ERROR
        elif manifest.deleting:
            end_state = api.ManifestState.DELETING
        elif processing:
            end_state = api.ManifestState.PROCESSING
        else:
            end_state = api.ManifestState.READY
        await self.update_status(manifest, end_state, f"{CONDITION_MANIFEST} in {end_state.value} state")

    async def aggregate(self, key, target, responses, count):
        try:
            collected = await collect_responses(responses, count)
        except asyncio.CancelledError:
            logger.warning("stopped waiting for responses for %s/%s", *key)
            raise
        await self.handle_responses(key, target, collected)

    def _aggregator_done(self, key, task):
        if self._aggregators.get(key) is task:
            del self._aggregators[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "response handling for %s/%s failed",
                *key,
                exc_info = task.exception()
            )

    async def allocate(self, manifest, mode):
        """
        Submits a job for each install of the manifest and starts an aggregator for
        the responses.
        """
        if manifest.key in self._aggregators:
            logger.info("jobs for %s are still in progress", manifest)
            return
        with self.recording(manifest, "Spec"):
            spec = await self.spec_resolver.resolve(manifest)
        target = await self.target_client(manifest, spec)
        count = len(spec.installs)
        # Every response has a slot, so workers never wait to deliver them
        responses = asyncio.Queue(maxsize = max(count, 1))
        task = asyncio.create_task(self.aggregate(manifest.key, target, responses, count))
        self._aggregators[manifest.key] = task
        task.add_done_callback(lambda t: self._aggregator_done(manifest.key, t))
        for install in spec.installs:
            await self.pool.submit(
                Job(
                    key = manifest.key,
                    install = install,
                    namespace = spec.namespace,
                    target = target,
                    mode = mode,
                    responses = responses
                )
            )

    async def verify(self, manifest):
        """
        Checks that every install of a ready manifest is still ready.
        """
        spec = await self.spec_resolver.resolve(manifest)
        target = await self.target_client(manifest, spec)
        for install in spec.installs:
            job = Job(manifest.key, install, spec.namespace, target, JobMode.CREATE, None)
            if not await self.operations_for(job).verify():
                await self.update_status(
                    manifest,
                    api.ManifestState.PROCESSING,
                    "resources not ready"
                )
                return

    async def sync_remote(self, manifest):
        spec = await self.spec_resolver.resolve(manifest)
        target = await self.target_client(manifest, spec)
        await self.remote.sync(target.ekclient, manifest)

    async def _reconcile(self, manifest):
        state = api.ManifestState(manifest.status.state)
        if manifest.deleting and state != api.ManifestState.DELETING:
            await self.update_status(manifest, api.ManifestState.DELETING, "deletion timestamp set")
            return Result(requeue = True)
        if not manifest.deleting and self.options.finalizer not in manifest.finalizers:
            await self.add_finalizer(manifest)
            return Result(requeue = True)
        if self.remote and manifest.spec.sync.enabled and not manifest.deleting:
            await self.sync_remote(manifest)
        if state == api.ManifestState.UNSET:
            await self.update_status(manifest, api.ManifestState.PROCESSING, "initial state")
            return Result(requeue = True)
        elif state == api.ManifestState.PROCESSING:
            await self.allocate(manifest, JobMode.CREATE)
            return self.on_failure()
        elif state == api.ManifestState.DELETING:
            # The aggregator removes the finalizer once everything is gone
            if self.options.finalizer not in manifest.finalizers:
                return Result()
            await self.allocate(manifest, JobMode.DELETE)
            return self.options.on_waiting()
        elif state == api.ManifestState.ERROR:
            await self.update_status(manifest, api.ManifestState.PROCESSING, "retrying after error")
            return self.on_failure()
        else:
            if status.generation_changed(manifest):
                await self.update_status(
                    manifest,
                    api.ManifestState.PROCESSING,
                    str(errors.GenerationChanged())
                )
                return Result(requeue = True)
            await self.verify(manifest)
            return self.options.on_success()

    async def reconcile(self, manifest):
        """
        Reconciles the given manifest and returns the result.
        """
        try:
            return await self._reconcile(manifest)
        except errors.StepFailed:
            await self.save_status(manifest)
            return self.on_failure()
        except errors.ResourcesNotReady:
            return self.options.on_waiting()
        except Exception as exc:
            logger.exception("error reconciling %s", manifest)
            status.set_error(manifest, str(exc) or exc.__class__.__name__)
            await self.save_status(manifest)
            return self.on_failure()
