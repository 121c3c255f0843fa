import asyncio
import dataclasses
import enum
import logging
import typing as t


logger = logging.getLogger(__name__)


class JobMode(str, enum.Enum):
    """
    The operation that a job performs.
    """
    CREATE = "create"
    DELETE = "delete"


@dataclasses.dataclass
class Job:
    """
    A single install or uninstall of one install against one target.
    """
    #: The (namespace, name) of the manifest that the job belongs to
    key: t.Tuple[str, str]
    #: The resolved install
    install: t.Any
    #: The namespace to install into
    namespace: str
    #: The client for the target cluster
    target: t.Any
    #: The operation to perform
    mode: JobMode
    #: The queue that the response is delivered to
    responses: asyncio.Queue


@dataclasses.dataclass
class Response:
    """
    The outcome of a job.
    """
    #: The (namespace, name) of the manifest that the job belongs to
    key: t.Tuple[str, str]
    #: The name of the install
    chart_name: str
    #: Indicates whether the install is ready, or fully removed for deletions
    ready: bool = False
    #: The error that occurred, if any
    error: t.Optional[BaseException] = None
    #: The client configuration used for the install
    client_config: t.Dict[str, t.Any] = dataclasses.field(default_factory = dict)
    #: The values used for the install
    overrides: t.Dict[str, t.Any] = dataclasses.field(default_factory = dict)


class WorkerPool:
    """
    A fixed number of workers that process jobs from a shared queue.

    Workers know nothing about the manifests that jobs belong to. Every job that a
    worker takes produces exactly one response.
    """
    def __init__(self, size, handler):
        self.size = size
        self.handler = handler
        # A single slot means submitting blocks until a worker is free to take it
        self.jobs = asyncio.Queue(maxsize = 1)
        self._tasks = []

    async def _work(self, index):
        logger.debug("worker %d started", index)
        while True:
            job = await self.jobs.get()
            try:
                response = await self.handler(job)
            except Exception as exc:
                logger.exception("worker %d failed to process job for %s", index, job.key)
                response = Response(key = job.key, chart_name = job.install.name, error = exc)
            finally:
                self.jobs.task_done()
            job.responses.put_nowait(response)

    def start(self):
        """
        Starts the workers.
        """
        if not self._tasks:
            self._tasks = [
                asyncio.create_task(self._work(index))
                for index in range(self.size)
            ]

    async def submit(self, job):
        """
        Submits a job, waiting until a worker is ready to take it.
        """
        await self.jobs.put(job)

    async def stop(self):
        """
        Stops the workers, abandoning any jobs in progress.
        """
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions = True)


async def collect_responses(responses, count):
    """
    Waits for exactly count responses from the given queue and returns them.

    Cancellation abandons the wait, and any responses that arrive afterwards are
    discarded with the queue.
    """
    collected = []
    while len(collected) < count:
        collected.append(await responses.get())
    return collected
