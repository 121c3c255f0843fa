import logging

from easykube import ApiError

from . import readiness, sync
from .objects import ekresource_for_manifest, status_patch
from .resources import ResourceToInfoConverter


logger = logging.getLogger(__name__)


class RemoteSync:
    """
    Keeps a mirror of a manifest on its target cluster.

    The mirror carries the finalizer so that it cannot disappear from the target
    while the local manifest still exists, and reflects the state of the local
    manifest.
    """
    def __init__(self, api_group, field_owner, finalizer, crds = ()):
        self.api_group = api_group
        self.field_owner = field_owner
        self.finalizer = finalizer
        # The CRD objects that must exist on the target for the mirror
        self.crds = list(crds)

    async def _ensure_crds(self, ekclient):
        if not self.crds:
            return
        converter = ResourceToInfoConverter(ekclient, None)
        infos = await converter.objects_to_infos(self.crds)
        await sync.ConcurrentApply(ekclient, self.field_owner).run(infos)
        await readiness.DeepReadyCheck(ekclient).run(infos)

    async def _ensure_namespace(self, ekclient, namespace):
        namespaces = await ekclient.api("v1").resource("namespaces")
        _ = await namespaces.server_side_apply(
            namespace,
            { "metadata": { "name": namespace } },
            field_manager = self.field_owner,
            force = True
        )

    async def fetch(self, ekclient, manifest):
        """
        Returns the mirror of the manifest, or None if it does not exist.
        """
        ekresource = await ekresource_for_manifest(ekclient, self.api_group)
        try:
            return await ekresource.fetch(manifest.name, namespace = manifest.namespace)
        except ApiError as exc:
            if exc.status_code == 404:
                return None
            else:
                raise

    async def sync(self, ekclient, manifest):
        """
        Ensures the mirror exists with the current spec and state of the manifest.
        """
        await self._ensure_crds(ekclient)
        await self._ensure_namespace(ekclient, manifest.namespace)
        ekresource = await ekresource_for_manifest(ekclient, self.api_group)
        state_patch = status_patch(manifest, self.api_group)
        state = state_patch["status"].get("state", "")
        state_patch["status"] = { "state": state }
        mirror = {
            "apiVersion": state_patch["apiVersion"],
            "kind": state_patch["kind"],
            "metadata": dict(state_patch["metadata"], finalizers = [self.finalizer]),
            "spec": manifest.spec.model_dump(
                mode = "json",
                by_alias = True,
                exclude_none = True
            ),
        }
        _ = await ekresource.server_side_apply(
            manifest.name,
            mirror,
            field_manager = self.field_owner,
            force = True,
            namespace = manifest.namespace
        )
        ekstatus = await ekresource_for_manifest(ekclient, self.api_group, "status")
        _ = await ekstatus.server_side_apply(
            manifest.name,
            state_patch,
            field_manager = self.field_owner,
            force = True,
            namespace = manifest.namespace
        )
        logger.debug("synced mirror of %s with state %r", manifest, state)

    async def remove_finalizer(self, ekclient, manifest):
        """
        Removes the finalizer from the mirror and deletes it.
        """
        mirror = await self.fetch(ekclient, manifest)
        if mirror is None:
            return
        ekresource = await ekresource_for_manifest(ekclient, self.api_group)
        finalizers = mirror["metadata"].get("finalizers", [])
        if self.finalizer in finalizers:
            _ = await ekresource.patch(
                manifest.name,
                {
                    "metadata": {
                        "finalizers": [f for f in finalizers if f != self.finalizer],
                    },
                },
                namespace = manifest.namespace
            )
        try:
            await ekresource.delete(manifest.name, namespace = manifest.namespace)
        except ApiError as exc:
            if exc.status_code != 404:
                raise
        logger.info("released mirror of %s", manifest)

    async def post_run(self, target, ekclient, manifest):
        """
        Hook for the reconciler that syncs the mirror after resources are applied.
        """
        if manifest.spec.sync.enabled:
            await self.sync(target.ekclient, manifest)

    async def pre_delete(self, target, ekclient, manifest):
        """
        Hook for the reconciler that releases the mirror before resources are deleted.
        """
        if manifest.spec.sync.enabled:
            await self.remove_finalizer(target.ekclient, manifest)
