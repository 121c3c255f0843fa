import abc
import base64
import dataclasses
import logging
import os
import tempfile

import easykube
import pyhelm3
from pydantic.json import pydantic_encoder

from .config import settings
from .models import v1alpha1 as api
from .utils import compute_checksum


logger = logging.getLogger(__name__)


class KubeconfigNotAvailable(Exception):
    """
    Raised when the kubeconfig for a target cluster cannot be read.
    """


@dataclasses.dataclass
class InstallOptions:
    """
    Options for installing into a target cluster, refreshed on every use.
    """
    #: The namespace that namespaced resources are installed into
    namespace: str
    #: Indicates whether the namespace should be created if it does not exist
    create_namespace: bool = True
    #: The field manager used for server-side apply
    field_owner: str = "manifest-operator"
    #: The name used for Helm releases
    release_name: str = ""


def helm_client_for(kubeconfig = None):
    """
    Returns a Helm client using the configured settings.
    """
    return pyhelm3.Client(
        default_timeout = settings.helm_client.default_timeout,
        executable = settings.helm_client.executable,
        history_max_revisions = settings.helm_client.history_max_revisions,
        insecure_skip_tls_verify = settings.helm_client.insecure_skip_tls_verify,
        kubeconfig = kubeconfig,
        unpack_directory = settings.helm_client.unpack_directory
    )


class TargetClient:
    """
    Clients for a target cluster along with the options for installing into it.
    """
    def __init__(self, ekclient, helm_client, options = None, kubeconfig_path = None):
        self.ekclient = ekclient
        self.helm_client = helm_client
        self.options = options
        # Set when the client owns a kubeconfig file that must be removed on close
        self.kubeconfig_path = kubeconfig_path

    async def ensure_namespace(self):
        """
        Ensures that the install namespace exists, if configured to do so.
        """
        namespace = self.options.namespace
        if not self.options.create_namespace or namespace == "default":
            return
        namespaces = await self.ekclient.api("v1").resource("namespaces")
        _ = await namespaces.server_side_apply(
            namespace,
            { "metadata": { "name": namespace } },
            field_manager = self.options.field_owner,
            force = True
        )

    async def aclose(self):
        """
        Closes the clients if they are owned by this target.
        """
        if self.kubeconfig_path:
            await self.ekclient.aclose()
            os.remove(self.kubeconfig_path)
            self.kubeconfig_path = None


class ClientCache(abc.ABC):
    """
    Cache of target clients, indexed by key.
    """
    @abc.abstractmethod
    def get(self, key):
        """
        Returns the client for the given key, or None if there is no client.
        """

    @abc.abstractmethod
    def set(self, key, client):
        """
        Stores the client for the given key.
        """

    async def aclose(self):
        """
        Closes any clients held by the cache.
        """


class MemoryClientCache(ClientCache):
    """
    Client cache that holds clients in memory for the lifetime of the process.
    """
    def __init__(self):
        self._clients = {}

    def get(self, key):
        return self._clients.get(key)

    def set(self, key, client):
        self._clients[key] = client

    async def aclose(self):
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.aclose()


class NoClientCache(ClientCache):
    """
    Client cache that never holds a client.
    """
    def get(self, key):
        return None

    def set(self, key, client):
        pass


class TargetClientResolver:
    """
    Resolves the target client for a manifest.

    Manifests are installed into the management cluster unless sync is enabled, in
    which case the target is located using the configured strategy.
    """
    def __init__(self, ekclient, cache, helm_client = None):
        self.ekclient = ekclient
        self.cache = cache
        self.helm_client = helm_client or helm_client_for()

    async def _read_kubeconfig(self, manifest):
        secret_ref = manifest.spec.sync.kubeconfig_secret
        secrets = await self.ekclient.api("v1").resource("secrets")
        try:
            secret = await secrets.fetch(secret_ref.name, namespace = manifest.namespace)
        except easykube.ApiError as exc:
            if exc.status_code == 404:
                raise KubeconfigNotAvailable(
                    f"kubeconfig secret '{secret_ref.name}' does not exist"
                )
            else:
                raise
        try:
            kubeconfig_data_b64 = secret.get("data", {})[secret_ref.key]
        except KeyError:
            raise KubeconfigNotAvailable(
                f"key '{secret_ref.key}' does not exist in kubeconfig secret"
            )
        return base64.b64decode(kubeconfig_data_b64)

    def _remote_client(self, kubeconfig_data):
        # The Helm client needs a file, which lives as long as the cached client
        with tempfile.NamedTemporaryFile(delete = False) as kubeconfig:
            kubeconfig.write(kubeconfig_data)
        ekclient = (
            easykube.Configuration
                .from_kubeconfig_data(kubeconfig_data, json_encoder = pydantic_encoder)
                .async_client(default_field_manager = settings.easykube_field_manager)
        )
        return TargetClient(
            ekclient,
            helm_client_for(kubeconfig.name),
            kubeconfig_path = kubeconfig.name
        )

    async def resolve(self, manifest, options):
        """
        Returns the target client for the manifest with the given install options.
        """
        sync = manifest.spec.sync
        remote = sync.enabled and sync.strategy == api.RemoteStrategy.SECRET
        if remote:
            kubeconfig_data = await self._read_kubeconfig(manifest)
            key = (manifest.namespace, manifest.name, compute_checksum(kubeconfig_data))
        else:
            key = (manifest.namespace, manifest.name, "")
        client = self.cache.get(key)
        if client is None:
            logger.info("creating target client for %s", manifest)
            if remote:
                client = self._remote_client(kubeconfig_data)
            else:
                client = TargetClient(self.ekclient, self.helm_client)
            self.cache.set(key, client)
        # The connection is shared, but the options can change with the manifest
        client.options = options
        return client
