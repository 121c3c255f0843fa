import asyncio
import copy
import itertools

from easykube import ApiError

from manifest_operator.clients import TargetClient


API_GROUP = "component.manifest-operator.io"
FINALIZER = f"{API_GROUP}/finalizer"


#: Maps resource names to kinds for the resources used in tests
KINDS = {
    "manifests": "Manifest",
    "namespaces": "Namespace",
    "secrets": "Secret",
    "configmaps": "ConfigMap",
}


CLUSTER_SCOPED = {"Namespace", "CustomResourceDefinition", "ClusterRole"}


class FakeApiError(ApiError):
    """
    API error raised by the fake cluster.
    """
    status_code = None

    def __init__(self, status_code, message):
        Exception.__init__(self, message)
        self.status_code = status_code
        self.message = message

    def __str__(self):
        return self.message


def not_found(kind, name):
    return FakeApiError(404, f"{kind} '{name}' not found")


class FakeResource:
    """
    In-memory stand-in for an easykube resource.
    """
    def __init__(self, cluster, api_version, kind, subresource = None):
        self.cluster = cluster
        self.api_version = api_version
        self.kind = kind
        self.subresource = subresource
        self.namespaced = kind not in CLUSTER_SCOPED

    def _key(self, name, namespace):
        return (self.kind, namespace if self.namespaced else None, name)

    def _record(self, verb, name, namespace):
        kind = f"{self.kind}/{self.subresource}" if self.subresource else self.kind
        self.cluster.calls.append((verb, kind, namespace, name))

    async def fetch(self, name, namespace = None):
        await asyncio.sleep(0)
        key = self._key(name, namespace)
        if key in self.cluster.fetch_failures:
            raise self.cluster.fetch_failures[key]
        try:
            return copy.deepcopy(self.cluster.objects[key])
        except KeyError:
            raise not_found(self.kind, name)

    async def server_side_apply(
        self,
        name,
        data,
        field_manager = None,
        force = False,
        namespace = None
    ):
        await asyncio.sleep(0)
        self._record("apply", name, namespace)
        key = self._key(name, namespace)
        if key in self.cluster.apply_failures:
            raise self.cluster.apply_failures[key]
        existing = self.cluster.objects.get(key)
        if self.subresource == "status":
            if existing is None:
                raise not_found(self.kind, name)
            existing["status"] = copy.deepcopy(data["status"])
            return self.cluster.store(key, existing)
        obj = copy.deepcopy(data)
        obj.setdefault("apiVersion", self.api_version)
        obj.setdefault("kind", self.kind)
        metadata = obj.setdefault("metadata", {})
        metadata["name"] = name
        if self.namespaced:
            metadata["namespace"] = namespace
        if existing is not None:
            for field in ("finalizers", "deletionTimestamp", "generation"):
                if field in existing["metadata"]:
                    metadata.setdefault(field, existing["metadata"][field])
            if "status" in existing:
                obj.setdefault("status", existing["status"])
        return self.cluster.store(key, obj)

    async def patch(self, name, data, namespace = None):
        await asyncio.sleep(0)
        self._record("patch", name, namespace)
        key = self._key(name, namespace)
        try:
            existing = self.cluster.objects[key]
        except KeyError:
            raise not_found(self.kind, name)
        metadata = dict(data.get("metadata", {}))
        resource_version = metadata.pop("resourceVersion", None)
        if resource_version and resource_version != existing["metadata"]["resourceVersion"]:
            raise FakeApiError(409, "the object has been modified")
        existing["metadata"].update(copy.deepcopy(metadata))
        if existing["metadata"].get("deletionTimestamp") and not existing["metadata"].get("finalizers"):
            del self.cluster.objects[key]
            return existing
        return self.cluster.store(key, existing)

    async def delete(self, name, namespace = None):
        await asyncio.sleep(0)
        self._record("delete", name, namespace)
        key = self._key(name, namespace)
        if key in self.cluster.delete_failures:
            raise self.cluster.delete_failures[key]
        try:
            existing = self.cluster.objects[key]
        except KeyError:
            raise not_found(self.kind, name)
        if existing["metadata"].get("finalizers"):
            existing["metadata"].setdefault("deletionTimestamp", "2024-01-01T00:00:00Z")
            self.cluster.store(key, existing)
        else:
            del self.cluster.objects[key]

    async def list(self, labels = None, namespace = None, all_namespaces = False):
        labels = labels or {}
        for (kind, obj_namespace, _), obj in list(self.cluster.objects.items()):
            if kind != self.kind:
                continue
            if namespace and obj_namespace != namespace:
                continue
            obj_labels = obj["metadata"].get("labels", {})
            if all(obj_labels.get(k) == v for k, v in labels.items()):
                yield copy.deepcopy(obj)


class FakeApi:
    def __init__(self, cluster, api_version):
        self.cluster = cluster
        self.api_version = api_version

    async def resource(self, name):
        name, _, subresource = name.partition("/")
        return FakeResource(
            self.cluster,
            self.api_version,
            KINDS.get(name, name),
            subresource or None
        )


class FakeCluster:
    """
    In-memory stand-in for an easykube async client.
    """
    def __init__(self):
        self.objects = {}
        self.calls = []
        self.apply_failures = {}
        self.delete_failures = {}
        self.fetch_failures = {}
        self.closed = False
        self._versions = itertools.count(1)

    def api(self, api_version):
        return FakeApi(self, api_version)

    def store(self, key, obj):
        obj["metadata"]["resourceVersion"] = str(next(self._versions))
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def add(self, obj):
        """
        Adds the given object directly to the cluster.
        """
        kind = obj["kind"]
        namespace = None if kind in CLUSTER_SCOPED else obj["metadata"].get("namespace")
        return self.store((kind, namespace, obj["metadata"]["name"]), copy.deepcopy(obj))

    def get(self, kind, name, namespace = None):
        return self.objects.get((kind, namespace, name))

    def remove(self, kind, name, namespace = None):
        self.objects.pop((kind, namespace, name), None)

    def calls_for(self, verb, kind):
        return [call for call in self.calls if call[0] == verb and call[1] == kind]

    async def aclose(self):
        self.closed = True


class StaticClientResolver:
    """
    Client resolver that always returns a target for the given client.
    """
    def __init__(self, ekclient, helm_client = None):
        self.target = TargetClient(ekclient, helm_client)

    async def resolve(self, manifest, options):
        self.target.options = options
        return self.target


class StaticRenderer:
    """
    Renderer that returns fixed manifest text.
    """
    def __init__(self, text):
        self.text = text
        self.removed = False

    def initialize(self, manifest):
        pass

    async def ensure_prerequisites(self, manifest):
        pass

    async def render(self, manifest):
        return self.text

    async def remove_prerequisites(self, manifest):
        self.removed = True


def configmap(name, namespace = "default", finalizers = None):
    obj = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": { "name": name, "namespace": namespace },
        "data": { "key": name },
    }
    if finalizers:
        obj["metadata"]["finalizers"] = list(finalizers)
    return obj


def synced_configmap(name, namespace = "default"):
    return {
        "group": "",
        "version": "v1",
        "kind": "ConfigMap",
        "name": name,
        "namespace": namespace,
    }


def manifest_body(
    name = "test",
    namespace = "default",
    state = "",
    synced = (),
    finalizers = (FINALIZER,),
    deleting = False,
    generation = 1,
    observed_generation = 1,
    conditions = (),
    installs = None,
):
    body = {
        "apiVersion": f"{API_GROUP}/v1alpha1",
        "kind": "Manifest",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "generation": generation,
            "finalizers": list(finalizers),
        },
        "spec": {
            "installs": installs if installs is not None else [
                {
                    "name": "app",
                    "source": { "type": "raw", "path": "/manifests/app.yaml" },
                },
            ],
        },
        "status": {
            "state": state,
            "synced": list(synced),
            "observedGeneration": observed_generation,
            "conditions": list(conditions),
        },
    }
    if deleting:
        body["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    return body
