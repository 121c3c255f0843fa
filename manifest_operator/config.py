import typing as t

from configomatic import (
    Configuration as BaseConfiguration,
)
from configomatic import (
    LoggingConfiguration,
    Section,
)
from pydantic import (
    Field,
    conint,
    confloat,
    constr,
)


class HelmClientConfiguration(Section):
    """
    Configuration for the Helm client.
    """

    #: The default timeout to use with Helm releases
    #: Can be an integer number of seconds or a duration string like 5m, 5h
    default_timeout: int | constr(min_length=1) = "1h"
    #: The executable to use
    #: By default, we assume Helm is on the PATH
    executable: constr(min_length=1) = "helm"
    #: The maximum number of revisions to retain in the history of releases
    history_max_revisions: int = 10
    #: Indicates whether to verify TLS when pulling charts
    insecure_skip_tls_verify: bool = False
    #: The directory to use for unpacking charts
    #: By default, the system temporary directory is used
    unpack_directory: str | None = None


class ReconcilerConfiguration(Section):
    """
    Configuration for the declarative reconciler.
    """

    #: The namespace that resources without a namespace are installed into
    namespace: constr(min_length=1) = "default"
    #: Indicates whether the install namespace should be created if missing
    create_namespace: bool = True
    #: Indicates whether renderer prerequisites (e.g. chart CRDs) are removed on delete
    delete_prerequisites: bool = False
    #: The ready check to use - deep uses per-kind readiness, exists only checks presence
    ready_check: t.Literal["deep", "exists"] = "deep"
    #: Indicates whether rendered manifests are cached between reconciliations
    render_cache: bool = True
    #: The executable to use for rendering kustomize overlays
    kustomize_executable: constr(min_length=1) = "kustomize"


class RequeueConfiguration(Section):
    """
    Configuration for requeue intervals and rate limiting.
    """

    #: The interval (seconds) before a ready manifest is checked again
    success: confloat(gt=0) = 30 * 60
    #: The interval (seconds) before a failed or processing manifest is retried
    failure: confloat(gt=0) = 30
    #: The interval (seconds) used while waiting for asynchronous work
    waiting: confloat(gt=0) = 3
    #: The first delay (seconds) of the per-manifest exponential backoff
    base_delay: confloat(gt=0) = 1
    #: The ceiling (seconds) of the per-manifest exponential backoff
    max_delay: confloat(gt=0) = 1000
    #: The sustained rate (per second) of the global token bucket
    rate: confloat(gt=0) = 30
    #: The burst size of the global token bucket
    burst: conint(gt=0) = 200


class WorkersConfiguration(Section):
    """
    Configuration for the worker pool used by the worker-pool engine.
    """

    #: The number of workers processing install and uninstall jobs
    size: conint(gt=0) = 4


class MetricsConfiguration(Section):
    """
    Configuration for the metrics server.
    """

    #: Indicates whether the metrics server should be started
    enabled: bool = True
    #: The port to serve metrics on
    port: conint(ge=1000) = 8080


class Configuration(
    BaseConfiguration,
    default_path="/etc/manifest-operator/config.yaml",
    path_env_var="MANIFEST_OPERATOR_CONFIG",
    env_prefix="MANIFEST_OPERATOR",
):
    """
    Top-level configuration model.
    """

    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    #: The API group of the manifest CRDs
    api_group: constr(min_length=1) = "component.manifest-operator.io"
    #: A list of categories to place CRDs into
    crd_categories: list[constr(min_length=1)] = Field(
        default_factory=lambda: ["manifests"]
    )

    #: The finalizer that protects manifests until their resources are removed
    #: By default, this is derived from the API group
    finalizer: constr(min_length=1) | None = None

    #: The reconciliation engine to use
    engine: t.Literal["declarative", "worker-pool"] = "declarative"

    #: The number of seconds to wait between timer executions
    timer_interval: conint(gt=0) = 60

    #: The field manager name to use for server-side apply
    easykube_field_manager: constr(min_length=1) = "manifest-operator"

    #: The amount of time (seconds) before a watch is forcefully restarted
    watch_timeout: conint(gt=0) = 600

    #: The declarative reconciler configuration
    reconciler: ReconcilerConfiguration = Field(
        default_factory=ReconcilerConfiguration
    )

    #: The requeue and rate limiting configuration
    requeue: RequeueConfiguration = Field(default_factory=RequeueConfiguration)

    #: The worker pool configuration
    workers: WorkersConfiguration = Field(default_factory=WorkersConfiguration)

    #: The Helm client configuration
    helm_client: HelmClientConfiguration = Field(
        default_factory=HelmClientConfiguration
    )

    #: The metrics configuration
    metrics: MetricsConfiguration = Field(default_factory=MetricsConfiguration)

    @property
    def manifest_finalizer(self):
        """
        The finalizer that the operator places on manifests.
        """
        return self.finalizer or f"{self.api_group}/finalizer"


settings = Configuration()
