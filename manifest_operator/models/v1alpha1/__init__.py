from .manifest import (  # noqa: F401
    Condition,
    ConditionStatus,
    InstallItem,
    InstallSource,
    InstallStatus,
    KubeconfigSecret,
    LabelSelector,
    LastOperation,
    Manifest,
    ManifestSpec,
    ManifestState,
    ManifestStatus,
    RemoteStrategy,
    SourceType,
    SyncedResource,
    SyncSpec,
)
