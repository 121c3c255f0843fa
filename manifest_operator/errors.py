class MultiError(Exception):
    """
    Raised when several independent operations fail.
    """
    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(str(err) for err in self.errors))


class ResourceError(Exception):
    """
    Raised when an operation on a single resource fails.
    """
    def __init__(self, info, cause):
        self.info = info
        self.cause = cause
        super().__init__(f"{info}: {cause}")


class DeletionNotFinished(Exception):
    """
    Raised when deletion of resources has been accepted but the resources still exist.
    """
    def __init__(self, pending = ()):
        self.pending = list(pending)
        super().__init__(
            f"deletion is not yet finished for {len(self.pending)} resource(s)"
        )


class StatusUpdateRequired(Exception):
    """
    Base class for reconciliation outcomes that are persisted by a status update
    before the manifest is requeued.
    """


class ObjectHasEmptyState(StatusUpdateRequired):
    """
    Raised when a manifest is observed without a state.
    """
    def __init__(self):
        super().__init__("object has an empty state")


class DeletionTimestampSetButNotInDeletingState(StatusUpdateRequired):
    """
    Raised when a manifest is being deleted but the state does not reflect it.
    """
    def __init__(self):
        super().__init__("resource is not set to deleting yet")


class GenerationChanged(StatusUpdateRequired):
    """
    Raised when the spec of a settled manifest has changed.
    """
    def __init__(self):
        super().__init__("observed generation change")


class ResourceSyncStateDiff(StatusUpdateRequired):
    """
    Raised when the applied resources differ from the recorded resources.
    """
    def __init__(self):
        super().__init__("resource syncTarget state diff detected")


class ResourcesNotReady(StatusUpdateRequired):
    """
    Raised when at least one resource is not ready yet.
    """
    def __init__(self):
        super().__init__("resources are not ready")


class InstallationConditionRequiresUpdate(StatusUpdateRequired):
    """
    Raised when the installation has just become ready.
    """
    def __init__(self):
        super().__init__("installation condition needs an update")


class StepFailed(StatusUpdateRequired):
    """
    Raised when a reconciliation step fails after the failure has been recorded.
    """
    def __init__(self, reason, message):
        self.reason = reason
        super().__init__(f"{reason}: {message}")
