import asyncio
import functools
import logging
import sys

import kopf
from easykube import Configuration, ApiError
from kube_custom_resource import CustomResourceRegistry
from pydantic.json import pydantic_encoder

from . import metrics, models
from .clients import MemoryClientCache
from .config import settings
from .models import v1alpha1 as api
from .objects import ManifestObject
from .pool_reconciler import PoolReconciler
from .ratelimit import ReconcileTracker, default_rate_limiter
from .reconciler import Options, Reconciler
from .remote import RemoteSync


logger = logging.getLogger(__name__)


# Create an easykube client from the environment
ekclient = (
    Configuration
        .from_environment(json_encoder = pydantic_encoder)
        .async_client(default_field_manager = settings.easykube_field_manager)
)


# Create a registry of custom resources and populate it from the models module
registry = CustomResourceRegistry(settings.api_group, settings.crd_categories)
registry.discover_models(models)


# The finalizer that kopf uses for its own handlers
KOPF_FINALIZER = f"{settings.api_group}/kopf-finalizer"


# Kopf runs timers alongside change handlers, so reconciliations of the same
# manifest are serialised, sharing one rate limiter for requeues
tracker = ReconcileTracker(default_rate_limiter(settings.requeue))


# The reconciler is created on startup, once the engine is known
reconciler = None


def record_event(manifest, type, reason, message):
    """
    Emits a Kubernetes event for the given manifest.
    """
    kopf.event(manifest.body, type = type, reason = reason, message = message)


def create_reconciler():
    """
    Returns the reconciler for the configured engine.
    """
    remote = RemoteSync(
        settings.api_group,
        settings.easykube_field_manager,
        settings.manifest_finalizer,
        [crd.kubernetes_resource() for crd in registry]
    )
    options = Options.from_settings(
        settings,
        ignored_finalizers = {KOPF_FINALIZER},
        client_cache = MemoryClientCache(),
        record_event = record_event
    )
    if settings.engine == "worker-pool":
        pool_reconciler = PoolReconciler(
            ekclient,
            options,
            settings.workers.size,
            settings.requeue.failure,
            remote = remote
        )
        pool_reconciler.start()
        return pool_reconciler
    else:
        options.post_runs.append(remote.post_run)
        options.pre_deletes.append(remote.pre_delete)
        return Reconciler(ekclient, options)


@kopf.on.startup()
async def apply_settings(**kwargs):
    """
    Apply kopf settings.
    """
    global reconciler
    kopf_settings = kwargs["settings"]
    kopf_settings.persistence.finalizer = KOPF_FINALIZER
    kopf_settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix = settings.api_group
    )
    kopf_settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix = settings.api_group,
        key = "last-handled-configuration",
    )
    kopf_settings.watching.client_timeout = settings.watch_timeout
    # Apply the CRDs
    for crd in registry:
        try:
            await ekclient.apply_object(crd.kubernetes_resource(), force = True)
        except Exception:
            logger.exception("error applying CRD %s.%s - exiting", crd.plural_name, crd.api_group)
            sys.exit(1)
    # Give Kubernetes a chance to create the APIs for the CRDs
    await asyncio.sleep(0.5)
    # Check to see if the APIs for the CRDs are up
    # If they are not, the kopf watches will not start properly so we exit and get restarted
    for crd in registry:
        preferred_version = next(k for k, v in crd.versions.items() if v.storage)
        api_version = f"{crd.api_group}/{preferred_version}"
        try:
            _ = await ekclient.get(f"/apis/{api_version}/{crd.plural_name}")
        except Exception:
            logger.exception(
                "api for %s.%s not available - exiting",
                crd.plural_name,
                crd.api_group
            )
            sys.exit(1)
    reconciler = create_reconciler()
    logger.info("using the %s engine", settings.engine)


@kopf.on.cleanup()
async def on_cleanup(**kwargs):
    """
    Runs on operator shutdown.
    """
    if isinstance(reconciler, PoolReconciler):
        await reconciler.stop()
    if reconciler is not None:
        await reconciler.options.client_cache.aclose()
    await ekclient.aclose()


def model_handler(model, register_fn, /, **kwargs):
    """
    Decorator that registers a handler with kopf for the specified model.
    """
    api_version = f"{settings.api_group}/{model._meta.version}"
    def decorator(func):
        @functools.wraps(func)
        async def handler(**handler_kwargs):
            if "instance" not in handler_kwargs:
                handler_kwargs["instance"] = ManifestObject(handler_kwargs["body"])
            try:
                return await func(**handler_kwargs)
            except ApiError as exc:
                if exc.status_code == 409:
                    # When a handler fails with a 409, we want to retry quickly
                    raise kopf.TemporaryError(str(exc), delay = 5)
                else:
                    raise
        return register_fn(api_version, model._meta.plural_name, **kwargs)(handler)
    return decorator


async def reconcile(instance):
    """
    Reconciles the latest version of the given manifest and returns the result,
    or None if the manifest no longer exists.
    """
    async with tracker.lock(instance.key):
        latest = await reconciler.fetch(instance.name, instance.namespace)
        if latest is None:
            tracker.forget(instance.key)
            return None
        return await reconciler.reconcile(latest)


def apply_result(instance, result, finished = False):
    """
    Translates a reconciliation result into kopf's retry mechanism.
    """
    if result is None:
        return
    delay = tracker.requeue_delay(instance.key, result, finished)
    if delay is None:
        return
    # Longer intervals are covered by the timer
    if result.requeue_after and delay >= settings.timer_interval:
        return
    raise kopf.TemporaryError("requeue", delay = delay)


@model_handler(api.Manifest, kopf.on.create)
@model_handler(api.Manifest, kopf.on.update, field = "spec")
@model_handler(api.Manifest, kopf.on.resume)
async def reconcile_manifest(instance, **kwargs):
    """
    Executes when a manifest is created, its spec changes or the operator resumes.
    """
    if instance.deleting:
        return
    apply_result(instance, await reconcile(instance))


@model_handler(
    api.Manifest,
    kopf.on.timer,
    # Since we have create and update handlers, we want to idle after a change
    interval = settings.timer_interval,
    idle = settings.timer_interval
)
async def check_manifest(instance, **kwargs):
    """
    Periodically re-verifies manifests.
    """
    if instance.deleting:
        return
    # The timer has its own schedule, so a requeue just waits for the next tick
    result = await reconcile(instance)
    if result and not (result.requeue or result.requeue_after):
        tracker.rate_limiter.forget(instance.key)


@model_handler(api.Manifest, kopf.on.delete)
async def delete_manifest(instance, **kwargs):
    """
    Executes when a manifest is deleted, retrying until its resources are gone.
    """
    apply_result(instance, await reconcile(instance), finished = True)


async def run():
    """
    Runs the operator and, if enabled, the metrics server.
    """
    tasks = [asyncio.create_task(kopf.operator(clusterwide = True))]
    if settings.metrics.enabled:
        tasks.append(asyncio.create_task(metrics.metrics_server()))
    try:
        done, _ = await asyncio.wait(tasks, return_when = asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions = True)
