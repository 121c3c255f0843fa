import asyncio
import logging
import time

from easykube import ApiError

from . import errors


logger = logging.getLogger(__name__)


def _namespace(info):
    return info.namespace or None


def _collect_errors(infos, results):
    return [
        errors.ResourceError(info, result)
        for info, result in zip(infos, results)
        if isinstance(result, BaseException)
    ]


class ConcurrentApply:
    """
    Applies resources to a cluster using server-side apply, one task per resource.
    """
    def __init__(self, client, field_owner):
        self.client = client
        self.field_owner = field_owner

    async def _apply(self, info):
        return await info.resource.server_side_apply(
            info.name,
            info.object,
            field_manager = self.field_owner,
            force = True,
            namespace = _namespace(info)
        )

    async def run(self, infos):
        """
        Applies all the given resources, raising a MultiError containing every
        failure if any of them fail.
        """
        start = time.monotonic()
        results = await asyncio.gather(
            *(self._apply(info) for info in infos),
            return_exceptions = True
        )
        failures = _collect_errors(infos, results)
        if failures:
            raise errors.MultiError(failures)
        logger.debug(
            "applied %d resource(s) in %.3fs",
            len(infos),
            time.monotonic() - start
        )


class ConcurrentCleanup:
    """
    Deletes resources from a cluster, one task per resource.
    """
    def __init__(self, client):
        self.client = client

    async def _delete(self, info):
        """
        Deletes the resource and returns true if it is gone, false if the deletion
        was accepted but the object still exists.
        """
        try:
            await info.resource.delete(info.name, namespace = _namespace(info))
        except ApiError as exc:
            if exc.status_code == 404:
                return True
            else:
                raise
        # The object may remain, e.g. while its own finalizers are processed
        try:
            _ = await info.resource.fetch(info.name, namespace = _namespace(info))
        except ApiError as exc:
            if exc.status_code == 404:
                return True
            else:
                raise
        return False

    async def run(self, infos):
        """
        Deletes all the given resources.

        Raises a MultiError if any deletions fail, or DeletionNotFinished if all the
        deletions were accepted but some objects still exist.
        """
        start = time.monotonic()
        results = await asyncio.gather(
            *(self._delete(info) for info in infos),
            return_exceptions = True
        )
        failures = _collect_errors(infos, results)
        if failures:
            raise errors.MultiError(failures)
        pending = [info for info, deleted in zip(infos, results) if not deleted]
        if pending:
            logger.info("waiting for deletion of %s", ", ".join(map(repr, pending)))
            raise errors.DeletionNotFinished(pending)
        logger.debug(
            "deleted %d resource(s) in %.3fs",
            len(infos),
            time.monotonic() - start
        )
