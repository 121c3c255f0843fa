import copy
import logging

from .models import v1alpha1 as api
from .utils import join_api_version, split_api_version


logger = logging.getLogger(__name__)


class ResourceInfo:
    """
    Handle for a single object in a target cluster, along with the easykube resource
    that is used to act on it.
    """
    def __init__(self, obj, resource = None):
        self.object = obj
        self.resource = resource

    @property
    def api_version(self):
        return self.object["apiVersion"]

    @property
    def group(self):
        return split_api_version(self.api_version)[0]

    @property
    def version(self):
        return split_api_version(self.api_version)[1]

    @property
    def kind(self):
        return self.object["kind"]

    @property
    def name(self):
        return self.object["metadata"]["name"]

    @property
    def namespace(self):
        return self.object["metadata"].get("namespace") or ""

    @property
    def identity(self):
        """
        The identity of the object in the cluster.

        The version is not part of the identity, as the same object can be served
        at multiple versions.
        """
        return (self.group, self.kind, self.namespace, self.name)

    def to_resource(self):
        """
        Returns the recorded resource for this handle.
        """
        return api.SyncedResource(
            group = self.group,
            version = self.version,
            kind = self.kind,
            name = self.name,
            namespace = self.namespace,
        )

    def __repr__(self):
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        else:
            return f"{self.kind}/{self.name}"


class ResourceToInfoConverter:
    """
    Converts recorded resources and rendered objects into resource handles for the
    given client.
    """
    def __init__(self, client, namespace):
        self.client = client
        self.namespace = namespace
        self._resources = {}

    async def _ekresource(self, api_version, kind):
        key = (api_version, kind)
        if key not in self._resources:
            ekapi = self.client.api(api_version)
            self._resources[key] = await ekapi.resource(kind)
        return self._resources[key]

    async def resources_to_infos(self, resources):
        """
        Returns resource handles for the given recorded resources.
        """
        infos = []
        for resource in resources:
            api_version = join_api_version(resource.group, resource.version)
            metadata = { "name": resource.name }
            if resource.namespace:
                metadata["namespace"] = resource.namespace
            infos.append(
                ResourceInfo(
                    {
                        "apiVersion": api_version,
                        "kind": resource.kind,
                        "metadata": metadata,
                    },
                    await self._ekresource(api_version, resource.kind)
                )
            )
        return infos

    async def objects_to_infos(self, objects):
        """
        Returns resource handles for the given rendered objects.

        Namespaced objects without a namespace are placed in the install namespace.
        """
        infos = []
        for obj in objects:
            ekresource = await self._ekresource(obj["apiVersion"], obj["kind"])
            if ekresource.namespaced and not obj["metadata"].get("namespace"):
                obj = copy.deepcopy(obj)
                obj["metadata"]["namespace"] = self.namespace
            infos.append(ResourceInfo(obj, ekresource))
        return infos


def infos_to_resources(infos):
    """
    Returns the recorded resources for the given resource handles.
    """
    return [info.to_resource() for info in infos]


def difference(current, target):
    """
    Returns the handles in current that have no counterpart in target, preserving
    the order of current.
    """
    target_identities = { info.identity for info in target }
    return [info for info in current if info.identity not in target_identities]


def resources_diff(old, new):
    """
    Returns the recorded resources that are only present in one of the given lists.
    """
    old_set = set(old)
    new_set = set(new)
    return [r for r in new if r not in old_set] + [r for r in old if r not in new_set]
