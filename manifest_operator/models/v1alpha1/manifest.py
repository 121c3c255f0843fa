import datetime as dt

from easysemver import SEMVER_VERSION_REGEX
from kube_custom_resource import CustomResource, schema
from pydantic import Field, model_validator


class SourceType(str, schema.Enum):
    """
    The type of source that an install is rendered from.
    """

    #: A chart from a Helm repository
    HELM_CHART = "helm-chart"
    #: A kustomize overlay at a path or URL
    KUSTOMIZE = "kustomize"
    #: Plain manifest files at a path or URL
    RAW = "raw"


class InstallSource(schema.BaseModel):
    """
    The source of the manifests for an install.
    """

    type: SourceType = Field(..., description="The type of the source.")
    chart_name: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The name of the chart, for helm-chart sources."
    )
    url: schema.Optional[schema.constr(min_length=1)] = Field(
        None,
        description=(
            "The URL of the source. For helm-chart sources, this is the chart "
            "repository. For other sources, this is the location of the manifests."
        ),
    )
    version: schema.Optional[schema.constr(pattern=SEMVER_VERSION_REGEX)] = Field(
        None, description="The version of the chart, for helm-chart sources."
    )
    path: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="A local path to the manifests, for non-chart sources."
    )

    @model_validator(mode="after")
    def check_location(self):
        """
        Ensures that the fields required by the source type are present.
        """
        if self.type == SourceType.HELM_CHART:
            if not self.chart_name:
                raise ValueError("chartName is required for helm-chart sources")
            if not self.url:
                raise ValueError("url is required for helm-chart sources")
        elif not (self.url or self.path):
            raise ValueError(f"one of url or path is required for {self.type} sources")
        return self


class LabelSelector(schema.BaseModel):
    """
    A label selector.
    """

    match_labels: schema.Dict[str, str] = Field(
        default_factory=dict, description="The labels that objects must have."
    )


class InstallItem(schema.BaseModel):
    """
    A single package installation declared by a manifest.
    """

    name: schema.constr(min_length=1) = Field(
        ..., description="The name of the install, also used as the release name."
    )
    source: schema.Optional[InstallSource] = Field(
        None,
        description=(
            "The source of the install. If not given, the default config is used."
        ),
    )
    values: schema.Dict[str, schema.Any] = Field(
        default_factory=dict, description="The values to use for the install."
    )
    override_selector: schema.Optional[LabelSelector] = Field(
        None,
        description=(
            "Selects config maps in the namespace of the manifest whose data is "
            "merged into the values for the install."
        ),
    )


class KubeconfigSecret(schema.BaseModel):
    """
    The spec for the kubeconfig secret reference.
    """

    name: schema.constr(min_length=1) = Field(
        ..., description="The name of the secret containing the kubeconfig."
    )
    key: schema.constr(min_length=1) = Field(
        "config", description="The key in the secret containing the kubeconfig."
    )


class RemoteStrategy(str, schema.Enum):
    """
    The strategy used to locate the target cluster.
    """

    #: The kubeconfig for the target cluster is read from a secret
    SECRET = "secret"


class SyncSpec(schema.BaseModel):
    """
    Options for installing into a remote cluster.
    """

    enabled: bool = Field(
        False, description="Indicates if the manifest targets a remote cluster."
    )
    namespace: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The namespace on the target cluster to install into."
    )
    strategy: RemoteStrategy = Field(
        RemoteStrategy.SECRET.value,
        description="The strategy used to locate the target cluster.",
    )
    kubeconfig_secret: schema.Optional[KubeconfigSecret] = Field(
        None, description="The secret containing the kubeconfig for the target."
    )

    @model_validator(mode="after")
    def check_kubeconfig_secret(self):
        """
        Ensures that a kubeconfig secret is given when required.
        """
        if (
            self.enabled and
            self.strategy == RemoteStrategy.SECRET and
            not self.kubeconfig_secret
        ):
            raise ValueError("kubeconfigSecret is required when sync is enabled")
        return self


class ManifestSpec(schema.BaseModel):
    """
    The spec for a manifest.
    """

    installs: list[InstallItem] = Field(
        default_factory=list, description="The installs for the manifest."
    )
    default_config: schema.Optional[InstallSource] = Field(
        None, description="The source to use for installs that do not specify one."
    )
    sync: SyncSpec = Field(
        default_factory=SyncSpec, description="Options for remote installation."
    )

    @model_validator(mode="after")
    def check_sources(self):
        """
        Ensures that every install has a source.
        """
        if not self.default_config:
            for install in self.installs:
                if not install.source:
                    raise ValueError(
                        f"install '{install.name}' has no source and there "
                        "is no default config"
                    )
        return self


class ManifestState(str, schema.Enum):
    """
    The state of a manifest.
    """

    UNSET = ""
    PROCESSING = "Processing"
    DELETING = "Deleting"
    READY = "Ready"
    ERROR = "Error"


class ConditionStatus(str, schema.Enum):
    """
    The status of a condition.
    """

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(schema.BaseModel):
    """
    A condition on a manifest.
    """

    type: schema.constr(min_length=1) = Field(..., description="The condition type.")
    status: ConditionStatus = Field(
        ConditionStatus.UNKNOWN.value, description="The status of the condition."
    )
    reason: schema.Optional[str] = Field(
        None, description="A machine-readable reason for the status."
    )
    message: schema.Optional[str] = Field(
        None, description="A human-readable message for the status."
    )
    observed_generation: int = Field(
        0, description="The generation that the condition was computed for."
    )
    last_transition_time: schema.Optional[dt.datetime] = Field(
        None, description="The time that the status last changed."
    )


class SyncedResource(schema.BaseModel, frozen=True):
    """
    The identity of a resource that was applied for a manifest.
    """

    group: str = Field("", description="The API group of the resource.")
    version: schema.constr(min_length=1) = Field(
        ..., description="The API version of the resource."
    )
    kind: schema.constr(min_length=1) = Field(..., description="The kind.")
    name: schema.constr(min_length=1) = Field(..., description="The name.")
    namespace: str = Field(
        "", description="The namespace of the resource, empty if cluster-scoped."
    )


class LastOperation(schema.BaseModel):
    """
    The last operation performed for a manifest.
    """

    operation: str = Field(..., description="A description of the operation.")
    last_update_time: schema.Optional[dt.datetime] = Field(
        None, description="The time of the operation."
    )


class InstallStatus(schema.BaseModel):
    """
    The last reported configuration of an install.
    """

    chart_name: str = Field(..., description="The name of the chart.")
    client_config: str = Field(
        "{}", description="The client configuration, serialised as JSON."
    )
    overrides: str = Field("{}", description="The value overrides, as JSON.")


class ManifestStatus(schema.BaseModel, extra="allow"):
    """
    The status of a manifest.
    """

    state: ManifestState = Field(
        ManifestState.UNSET.value, description="The state of the manifest."
    )
    conditions: list[Condition] = Field(
        default_factory=list, description="The conditions of the manifest."
    )
    synced: list[SyncedResource] = Field(
        default_factory=list, description="The resources that were last applied."
    )
    observed_generation: int = Field(
        0, description="The generation that the status was computed for."
    )
    last_operation: schema.Optional[LastOperation] = Field(
        None, description="The last operation performed for the manifest."
    )
    installs: schema.Dict[str, InstallStatus] = Field(
        default_factory=dict,
        description="The reported configuration of each install, indexed by name.",
    )


class Manifest(
    CustomResource,
    subresources={"status": {}},
    printer_columns=[
        {
            "name": "State",
            "type": "string",
            "jsonPath": ".status.state",
        },
        {
            "name": "Sync",
            "type": "boolean",
            "jsonPath": ".spec.sync.enabled",
        },
        {
            "name": "Operation",
            "type": "string",
            "jsonPath": ".status.lastOperation.operation",
            "priority": 1,
        },
    ],
):
    """
    A set of package installations reconciled onto a target cluster.
    """

    spec: ManifestSpec
    status: ManifestStatus = Field(default_factory=ManifestStatus)
