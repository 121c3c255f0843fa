import abc
import asyncio
import logging
import math
import time

from easykube import ApiError

from . import errors


logger = logging.getLogger(__name__)


# Keeps references to checks that are still running after a short-circuit
_background_tasks = set()


def _condition_true(obj, type):
    conditions = obj.get("status", {}).get("conditions", [])
    return any(c["type"] == type and c["status"] == "True" for c in conditions)


def _generation_observed(obj):
    generation = obj["metadata"].get("generation", 0)
    return obj.get("status", {}).get("observedGeneration", 0) >= generation


def _scaled_value(value, total):
    """
    Returns the value of an int-or-percent, rounding percentages up.
    """
    if isinstance(value, str) and value.endswith("%"):
        return math.ceil(total * int(value[:-1]) / 100)
    return int(value)


def deployment_ready(obj):
    if not _generation_observed(obj):
        return False
    spec = obj.get("spec", {})
    status = obj.get("status", {})
    replicas = spec.get("replicas", 1)
    rolling_update = spec.get("strategy", {}).get("rollingUpdate", {})
    max_unavailable = _scaled_value(rolling_update.get("maxUnavailable", 0), replicas)
    return (
        status.get("updatedReplicas", 0) >= replicas and
        status.get("availableReplicas", 0) >= replicas - max_unavailable
    )


def statefulset_ready(obj):
    if not _generation_observed(obj):
        return False
    spec = obj.get("spec", {})
    status = obj.get("status", {})
    strategy = spec.get("updateStrategy", {})
    if strategy.get("type", "RollingUpdate") != "RollingUpdate":
        return True
    replicas = spec.get("replicas", 1)
    partition = strategy.get("rollingUpdate", {}).get("partition", 0)
    if status.get("updatedReplicas", 0) < replicas - partition:
        return False
    if status.get("readyReplicas", 0) != replicas:
        return False
    if partition == 0 and status.get("currentRevision") != status.get("updateRevision"):
        return False
    return True


def daemonset_ready(obj):
    if not _generation_observed(obj):
        return False
    spec = obj.get("spec", {})
    status = obj.get("status", {})
    strategy = spec.get("updateStrategy", {})
    if strategy.get("type", "RollingUpdate") != "RollingUpdate":
        return True
    desired = status.get("desiredNumberScheduled", 0)
    if status.get("updatedNumberScheduled", 0) != desired:
        return False
    max_unavailable = _scaled_value(
        strategy.get("rollingUpdate", {}).get("maxUnavailable", 1),
        desired
    )
    return status.get("numberReady", 0) >= desired - max_unavailable


def replicaset_ready(obj):
    if not _generation_observed(obj):
        return False
    replicas = obj.get("spec", {}).get("replicas", 1)
    return obj.get("status", {}).get("readyReplicas", 0) >= replicas


def job_ready(obj):
    spec = obj.get("spec", {})
    status = obj.get("status", {})
    if status.get("failed", 0) > spec.get("backoffLimit", 6):
        logger.info(
            "job %s/%s has failed",
            obj["metadata"].get("namespace"),
            obj["metadata"]["name"]
        )
        return False
    return status.get("succeeded", 0) >= spec.get("completions", 1)


def pod_ready(obj):
    return _condition_true(obj, "Ready")


def pvc_ready(obj):
    return obj.get("status", {}).get("phase") == "Bound"


def service_ready(obj):
    spec = obj.get("spec", {})
    service_type = spec.get("type", "ClusterIP")
    if service_type == "ExternalName":
        return True
    if not spec.get("clusterIP"):
        return False
    if service_type == "LoadBalancer":
        if spec.get("externalIPs"):
            return True
        return bool(obj.get("status", {}).get("loadBalancer", {}).get("ingress"))
    return True


def crd_ready(obj):
    return _condition_true(obj, "Established")


def namespace_ready(obj):
    return obj.get("status", {}).get("phase", "Active") == "Active"


#: Readiness functions indexed by (group, kind)
READY_FUNCS = {
    ("apps", "Deployment"): deployment_ready,
    ("apps", "StatefulSet"): statefulset_ready,
    ("apps", "DaemonSet"): daemonset_ready,
    ("apps", "ReplicaSet"): replicaset_ready,
    ("batch", "Job"): job_ready,
    ("", "Pod"): pod_ready,
    ("", "PersistentVolumeClaim"): pvc_ready,
    ("", "Service"): service_ready,
    ("", "Namespace"): namespace_ready,
    ("apiextensions.k8s.io", "CustomResourceDefinition"): crd_ready,
}


def is_ready(info, obj):
    """
    Returns true if the given live object is ready according to its kind.

    Kinds without readiness semantics are ready as soon as they exist.
    """
    ready_func = READY_FUNCS.get((info.group, info.kind))
    return ready_func(obj) if ready_func else True


class ReadyCheck(abc.ABC):
    """
    Base class for checks on the readiness of a list of resources.
    """
    @abc.abstractmethod
    async def run(self, infos):
        """
        Raises ResourcesNotReady if any of the resources are not ready.
        """


class DeepReadyCheck(ReadyCheck):
    """
    Checks the readiness of each resource concurrently using per-kind semantics.
    """
    def __init__(self, client):
        self.client = client

    async def _is_ready(self, info):
        try:
            obj = await info.resource.fetch(info.name, namespace = info.namespace or None)
        except ApiError as exc:
            if exc.status_code == 404:
                return False
            else:
                raise
        return is_ready(info, obj)

    async def _check(self, info, results):
        # Each check produces exactly one result
        try:
            ready = await self._is_ready(info)
        except Exception as exc:
            results.put_nowait(errors.ResourceError(info, exc))
        else:
            results.put_nowait(None if ready else errors.ResourcesNotReady())

    async def run(self, infos):
        start = time.monotonic()
        logger.debug("checking readiness of %d resource(s)", len(infos))
        # The queue has room for every result, so no check ever blocks
        results = asyncio.Queue(maxsize = max(len(infos), 1))
        for info in infos:
            task = asyncio.create_task(self._check(info, results))
            _background_tasks.add(task)
            task.add_done_callback(_background_tasks.discard)
        failures = []
        for _ in range(len(infos)):
            result = await results.get()
            if isinstance(result, errors.ResourcesNotReady):
                raise result
            elif result is not None:
                failures.append(result)
        if failures:
            raise errors.MultiError(failures)
        logger.debug(
            "readiness check for %d resource(s) finished in %.3fs",
            len(infos),
            time.monotonic() - start
        )


class ExistsReadyCheck(ReadyCheck):
    """
    Checks that each resource exists, one at a time.
    """
    def __init__(self, client):
        self.client = client

    async def run(self, infos):
        for info in infos:
            try:
                _ = await info.resource.fetch(info.name, namespace = info.namespace or None)
            except ApiError as exc:
                # A resource that is not found has not been applied yet
                if exc.status_code != 404:
                    raise errors.ResourceError(info, exc) from exc


def ready_check_for(name, client):
    """
    Returns the ready check with the given name for the client.
    """
    if name == "exists":
        return ExistsReadyCheck(client)
    else:
        return DeepReadyCheck(client)
