import contextlib
import dataclasses
import logging
import typing as t

from easykube import ApiError

from . import errors, readiness, render, resources, status, sync
from .clients import InstallOptions, MemoryClientCache, TargetClientResolver
from .models.v1alpha1 import ManifestState
from .objects import ManifestObject, ekresource_for_manifest, status_patch
from .resolver import SpecResolver
from .utils import jitter


logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Result:
    """
    The outcome of a reconciliation.
    """
    #: Indicates that the manifest should be reconciled again after a backoff
    requeue: bool = False
    #: If given, the manifest is reconciled again after this many seconds
    requeue_after: float = 0


def log_event(manifest, type, reason, message):
    logger.info("[%s] %s %s: %s", manifest, type, reason, message)


@dataclasses.dataclass
class Options:
    """
    Options for the reconciler.
    """
    #: The API group of the manifest resources
    api_group: str
    #: The field manager used for every server-side apply
    field_owner: str
    #: The finalizer that protects manifests until their resources are removed
    finalizer: str
    #: Finalizers owned by the operator framework that do not block our release
    ignored_finalizers: t.Set[str] = dataclasses.field(default_factory = set)
    #: The namespace that resources are installed into by default
    namespace: str = "default"
    #: Indicates whether the install namespace is created if missing
    create_namespace: bool = True
    #: Indicates whether renderer prerequisites are removed on deletion
    delete_prerequisites: bool = False
    #: The name of the ready check to use
    ready_check: str = "deep"
    #: Factory for a custom ready check, called with the target easykube client
    custom_ready_check: t.Optional[t.Callable] = None
    #: The executable used for kustomize renders
    kustomize_executable: str = "kustomize"
    #: The cache used for rendered manifests, or None to disable caching
    render_cache: t.Optional[render.RenderCache] = None
    #: The cache used for target clients
    client_cache: t.Any = dataclasses.field(default_factory = MemoryClientCache)
    #: Hooks run before resources are deleted, called with (target, ekclient, manifest)
    pre_deletes: t.List[t.Callable] = dataclasses.field(default_factory = list)
    #: Transforms applied to rendered objects, called with (manifest, objects)
    post_render_transforms: t.List[t.Callable] = dataclasses.field(default_factory = list)
    #: Hooks run after resources are applied, called with (target, ekclient, manifest)
    post_runs: t.List[t.Callable] = dataclasses.field(default_factory = list)
    #: Callable used to emit events, called with (manifest, type, reason, message)
    record_event: t.Callable = log_event
    #: The interval before a ready manifest is checked again
    success_interval: float = 30 * 60
    #: The interval used while waiting for resources
    waiting_interval: float = 3

    @classmethod
    def from_settings(cls, settings, **kwargs):
        """
        Returns options derived from the given settings.
        """
        kwargs.setdefault("ignored_finalizers", {f"{settings.api_group}/kopf-finalizer"})
        if settings.reconciler.render_cache:
            kwargs.setdefault("render_cache", render.RenderCache())
        return cls(
            api_group = settings.api_group,
            field_owner = settings.easykube_field_manager,
            finalizer = settings.manifest_finalizer,
            namespace = settings.reconciler.namespace,
            create_namespace = settings.reconciler.create_namespace,
            delete_prerequisites = settings.reconciler.delete_prerequisites,
            ready_check = settings.reconciler.ready_check,
            kustomize_executable = settings.reconciler.kustomize_executable,
            success_interval = settings.requeue.success,
            waiting_interval = settings.requeue.waiting,
            **kwargs
        )

    def on_success(self):
        return Result(requeue_after = jitter(self.success_interval))

    def on_waiting(self):
        return Result(requeue_after = jitter(self.waiting_interval))


class Reconciler:
    """
    Reconciles manifests by rendering their installs and converging the target
    cluster onto the rendered resources.

    Every outcome that needs persisting is written to the status subresource before
    the manifest is requeued.
    """
    def __init__(
        self,
        ekclient,
        options,
        spec_resolver = None,
        client_resolver = None
    ):
        self.ekclient = ekclient
        self.options = options
        self.spec_resolver = spec_resolver or SpecResolver(ekclient, options.namespace)
        self.client_resolver = client_resolver or TargetClientResolver(
            ekclient,
            options.client_cache
        )

    def event(self, manifest, type, reason, message):
        self.options.record_event(manifest, type, reason, message)

    @contextlib.contextmanager
    def recording(self, manifest, reason, set_error = True):
        """
        Context manager that records a failure of the enclosed step on the manifest.
        """
        try:
            yield
        except (errors.StatusUpdateRequired, errors.DeletionNotFinished):
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            self.event(manifest, "Warning", reason, message)
            if set_error:
                status.set_error(manifest, message)
            raise errors.StepFailed(reason, message) from exc

    async def fetch(self, name, namespace):
        """
        Returns the manifest with the given name and namespace, or None if it does
        not exist.
        """
        ekresource = await ekresource_for_manifest(self.ekclient, self.options.api_group)
        try:
            body = await ekresource.fetch(name, namespace = namespace)
        except ApiError as exc:
            if exc.status_code == 404:
                return None
            else:
                raise
        return ManifestObject(body)

    async def save_status(self, manifest):
        """
        Saves the status of the manifest using server-side apply, forcing ownership.
        """
        status.finalise(manifest)
        ekresource = await ekresource_for_manifest(
            self.ekclient,
            self.options.api_group,
            "status"
        )
        _ = await ekresource.server_side_apply(
            manifest.name,
            status_patch(manifest, self.options.api_group),
            field_manager = self.options.field_owner,
            force = True,
            namespace = manifest.namespace
        )

    async def _patch_finalizers(self, manifest, finalizers):
        ekresource = await ekresource_for_manifest(self.ekclient, self.options.api_group)
        _ = await ekresource.patch(
            manifest.name,
            {
                "metadata": {
                    "finalizers": finalizers,
                    # Include the resource version for optimistic concurrency
                    "resourceVersion": manifest.resource_version,
                },
            },
            namespace = manifest.namespace
        )
        manifest.meta["finalizers"] = finalizers

    async def add_finalizer(self, manifest):
        await self._patch_finalizers(
            manifest,
            manifest.finalizers + [self.options.finalizer]
        )

    async def remove_finalizer(self, manifest):
        await self._patch_finalizers(
            manifest,
            [f for f in manifest.finalizers if f != self.options.finalizer]
        )

    def initialize(self, manifest):
        """
        Corrects inconsistent states and seeds the default conditions.
        """
        state = manifest.status.state
        if manifest.deleting and state != ManifestState.DELETING:
            exc = errors.DeletionTimestampSetButNotInDeletingState()
            status.set_state(manifest, ManifestState.DELETING, str(exc))
            raise exc
        status.seed_conditions(manifest)
        if state == ManifestState.UNSET:
            exc = errors.ObjectHasEmptyState()
            status.set_state(manifest, ManifestState.PROCESSING, str(exc))
            raise exc
        if (
            state in {ManifestState.READY, ManifestState.ERROR} and
            status.generation_changed(manifest)
        ):
            exc = errors.GenerationChanged()
            status.set_state(manifest, ManifestState.PROCESSING, str(exc))
            raise exc

    def install_options(self, spec):
        return InstallOptions(
            namespace = spec.namespace,
            create_namespace = self.options.create_namespace,
            field_owner = self.options.field_owner
        )

    async def target_client(self, manifest, spec):
        with self.recording(manifest, "ClientInitialization"):
            target = await self.client_resolver.resolve(manifest, self.install_options(spec))
            if not manifest.deleting:
                await target.ensure_namespace()
        return target

    async def initialize_renderer(self, manifest, spec, target):
        with self.recording(manifest, "RendererInitialization"):
            renderer = render.renderer_for_spec(
                manifest,
                spec,
                target,
                self.options.render_cache,
                self.options.kustomize_executable
            )
            renderer.initialize(manifest)
            if not manifest.deleting:
                await renderer.ensure_prerequisites(manifest)
        return renderer

    async def render_target(self, manifest, renderer, converter):
        """
        Returns the handles for the resources that should exist.
        """
        # Once deleting, nothing should exist so the whole current set is pruned
        if manifest.deleting:
            return []
        with self.recording(manifest, "Render"):
            text = await renderer.render(manifest)
        with self.recording(manifest, "ManifestParsing"):
            objects = render.parse_manifest(text)
        for transform in self.options.post_render_transforms:
            with self.recording(manifest, "PostRenderTransform"):
                objects = await transform(manifest, objects) or objects
        with self.recording(manifest, "TargetResourceParsing"):
            return await converter.objects_to_infos(objects)

    async def render_resources(self, manifest, renderer, converter):
        """
        Returns a tuple of (target, current) resource handles.
        """
        target = await self.render_target(manifest, renderer, converter)
        with self.recording(manifest, "CurrentResourceParsing"):
            current = await converter.resources_to_infos(manifest.status.synced)
        if not status.condition_is_true(manifest, status.CONDITION_RESOURCES):
            message = "resources are parsed and ready for use"
            self.event(manifest, "Normal", "ResourcesAvailable", message)
            status.set_condition(
                manifest,
                status.CONDITION_RESOURCES,
                "True",
                "ResourcesAvailable",
                message
            )
            status.set_operation(manifest, message)
        return target, current

    async def prune(self, manifest, target, renderer, diff):
        """
        Deletes the resources that are no longer part of the target.
        """
        if manifest.deleting:
            for pre_delete in self.options.pre_deletes:
                # The state stays as deleting when a hook fails
                with self.recording(manifest, "PreDelete", set_error = False):
                    await pre_delete(target, self.ekclient, manifest)
        try:
            with self.recording(manifest, "Deletion"):
                await sync.ConcurrentCleanup(target.ekclient).run(diff)
        except errors.DeletionNotFinished as exc:
            self.event(manifest, "Normal", "Deletion", str(exc))
            raise
        if manifest.deleting and self.options.delete_prerequisites:
            with self.recording(manifest, "PrerequisiteRemoval", set_error = False):
                await renderer.remove_prerequisites(manifest)

    async def release(self, manifest):
        """
        Releases the manifest once its resources are gone.
        """
        if self.options.finalizer in manifest.finalizers:
            await self.remove_finalizer(manifest)
            if self.options.render_cache is not None:
                self.options.render_cache.evict(manifest.key)
            logger.info("released %s", manifest)
            return Result()
        others = [
            f
            for f in manifest.finalizers
            if f not in self.options.ignored_finalizers
        ]
        if not others:
            return Result()
        message = f"waiting as other finalizers are present: {others}"
        self.event(manifest, "Normal", "FinalizerRemoval", message)
        status.set_state(manifest, ManifestState.DELETING, message)
        await self.save_status(manifest)
        return self.options.on_waiting()

    def ready_check(self, target):
        if self.options.custom_ready_check:
            return self.options.custom_ready_check(target.ekclient)
        return readiness.ready_check_for(self.options.ready_check, target.ekclient)

    async def check_readiness(self, manifest, target, infos):
        with self.recording(manifest, "ReadyCheck"):
            try:
                await self.ready_check(target).run(infos)
            except errors.ResourcesNotReady:
                message = "waiting for resources to become ready"
                self.event(manifest, "Normal", "ResourceReadyCheck", message)
                status.set_state(manifest, ManifestState.PROCESSING, message)
                raise
        if (
            not status.condition_is_true(manifest, status.CONDITION_INSTALLATION) or
            manifest.status.state != ManifestState.READY
        ):
            message = "installation is ready and resources can be used"
            self.event(manifest, "Normal", "Ready", message)
            status.set_condition(
                manifest,
                status.CONDITION_INSTALLATION,
                "True",
                "Ready",
                message
            )
            status.set_state(manifest, ManifestState.READY, message)
            raise errors.InstallationConditionRequiresUpdate()

    async def sync_resources(self, manifest, target, infos):
        """
        Applies the target resources and verifies that they are ready.
        """
        with self.recording(manifest, "ServerSideApply"):
            await sync.ConcurrentApply(target.ekclient, self.options.field_owner).run(infos)
        previous = manifest.status.synced
        synced = resources.infos_to_resources(infos)
        status.set_synced(manifest, synced)
        if resources.resources_diff(previous, synced):
            exc = errors.ResourceSyncStateDiff()
            status.set_state(manifest, ManifestState.PROCESSING, str(exc))
            raise exc
        for post_run in self.options.post_runs:
            with self.recording(manifest, "PostRun"):
                await post_run(target, self.ekclient, manifest)
        await self.check_readiness(manifest, target, infos)

    async def _reconcile(self, manifest):
        self.initialize(manifest)
        if not manifest.deleting and self.options.finalizer not in manifest.finalizers:
            await self.add_finalizer(manifest)
            return Result(requeue = True)
        with self.recording(manifest, "Spec"):
            spec = await self.spec_resolver.resolve(manifest)
        target = await self.target_client(manifest, spec)
        converter = resources.ResourceToInfoConverter(target.ekclient, spec.namespace)
        renderer = await self.initialize_renderer(manifest, spec, target)
        target_infos, current_infos = await self.render_resources(
            manifest,
            renderer,
            converter
        )
        diff = resources.difference(current_infos, target_infos)
        await self.prune(manifest, target, renderer, diff)
        if manifest.deleting:
            return await self.release(manifest)
        await self.sync_resources(manifest, target, target_infos)
        return self.options.on_success()

    async def reconcile(self, manifest):
        """
        Reconciles the given manifest and returns the result.
        """
        try:
            return await self._reconcile(manifest)
        except errors.DeletionNotFinished:
            return self.options.on_waiting()
        except errors.StatusUpdateRequired as exc:
            logger.info("updating status of %s: %s", manifest, exc)
            await self.save_status(manifest)
            if isinstance(exc, errors.ResourcesNotReady):
                return self.options.on_waiting()
            return Result(requeue = True)
