import dataclasses
import logging
import typing as t

import yaml

from .models import v1alpha1 as api
from .utils import mergeconcat


logger = logging.getLogger(__name__)


@dataclasses.dataclass
class ResolvedInstall:
    """
    An install with its source and values fully resolved.
    """
    #: The name of the install
    name: str
    #: The source that the install is rendered from
    source: api.InstallSource
    #: The values for the install, including any overrides
    values: t.Dict[str, t.Any] = dataclasses.field(default_factory = dict)


@dataclasses.dataclass
class ResolvedSpec:
    """
    The resolved form of a manifest spec.
    """
    #: The resolved installs
    installs: t.List[ResolvedInstall]
    #: The namespace to install into
    namespace: str


class SpecResolver:
    """
    Resolves manifest specs into the form consumed by the renderers.
    """
    def __init__(self, ekclient, default_namespace):
        self.ekclient = ekclient
        self.default_namespace = default_namespace

    async def _overrides(self, manifest, selector):
        """
        Returns the values from the config maps matching the selector, merged in
        name order.
        """
        configmaps = await self.ekclient.api("v1").resource("configmaps")
        found = [
            configmap
            async for configmap in configmaps.list(
                labels = selector.match_labels,
                namespace = manifest.namespace
            )
        ]
        overrides = {}
        for configmap in sorted(found, key = lambda cm: cm["metadata"]["name"]):
            for key, data in sorted(configmap.get("data", {}).items()):
                values = yaml.safe_load(data)
                if not isinstance(values, dict):
                    raise ValueError(
                        f"key '{key}' of config map "
                        f"'{configmap['metadata']['name']}' is not a mapping"
                    )
                overrides = mergeconcat(overrides, values)
        return overrides

    async def resolve(self, manifest):
        """
        Returns the resolved spec for the given manifest.
        """
        installs = []
        for install in manifest.spec.installs:
            values = dict(install.values)
            if install.override_selector:
                values = mergeconcat(
                    values,
                    await self._overrides(manifest, install.override_selector)
                )
            installs.append(
                ResolvedInstall(
                    name = install.name,
                    source = install.source or manifest.spec.default_config,
                    values = values
                )
            )
        return ResolvedSpec(
            installs = installs,
            namespace = manifest.spec.sync.namespace or self.default_namespace
        )
