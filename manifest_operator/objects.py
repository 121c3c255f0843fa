import copy

from .models import v1alpha1 as api


class ManifestObject:
    """
    A manifest as observed from the API server.

    Holds the validated model alongside the raw metadata, since the reconciler
    needs metadata fields (generation, finalizers) that the model does not carry.
    """
    def __init__(self, body):
        self.body = copy.deepcopy(dict(body))
        self.instance = api.Manifest.model_validate(self.body)

    @property
    def meta(self):
        return self.body["metadata"]

    @property
    def name(self):
        return self.meta["name"]

    @property
    def namespace(self):
        return self.meta.get("namespace")

    @property
    def key(self):
        return (self.namespace, self.name)

    @property
    def generation(self):
        return self.meta.get("generation", 0)

    @property
    def resource_version(self):
        return self.meta.get("resourceVersion")

    @property
    def finalizers(self):
        return list(self.meta.get("finalizers", []))

    @property
    def deleting(self):
        return bool(self.meta.get("deletionTimestamp"))

    @property
    def spec(self):
        return self.instance.spec

    @property
    def status(self):
        return self.instance.status

    def __repr__(self):
        return f"Manifest/{self.namespace}/{self.name}"


async def ekresource_for_manifest(ekclient, api_group, subresource = None):
    """
    Returns an easykube resource for manifests using the given client.
    """
    ekapi = ekclient.api(f"{api_group}/{api.Manifest._meta.version}")
    resource = api.Manifest._meta.plural_name
    if subresource:
        resource = f"{resource}/{subresource}"
    return await ekapi.resource(resource)


def status_patch(manifest, api_group):
    """
    Returns the object used to apply the status of the manifest.
    """
    return {
        "apiVersion": f"{api_group}/{api.Manifest._meta.version}",
        "kind": api.Manifest._meta.kind,
        "metadata": {
            "name": manifest.name,
            "namespace": manifest.namespace,
        },
        "status": manifest.status.model_dump(
            mode = "json",
            by_alias = True,
            exclude_none = True
        ),
    }
