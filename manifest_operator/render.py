import abc
import asyncio
import enum
import logging
import pathlib
import shlex

import httpx
import yaml

from . import readiness, sync
from .models import v1alpha1 as api
from .resources import ResourceToInfoConverter
from .utils import compute_checksum


logger = logging.getLogger(__name__)


class RenderError(Exception):
    """
    Raised when rendering the manifests for an install fails.
    """


class CommandError(RenderError):
    """
    Raised when an external rendering command fails.
    """
    def __init__(self, returncode, stdout, stderr):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(stderr)


class ManifestParseError(Exception):
    """
    Raised when rendered manifest text cannot be parsed into objects.
    """


class Mode(str, enum.Enum):
    """
    The mode used to render an install.
    """
    HELM = "helm"
    KUSTOMIZE = "kustomize"
    RAW = "raw"


MODES = {
    api.SourceType.HELM_CHART: Mode.HELM,
    api.SourceType.KUSTOMIZE: Mode.KUSTOMIZE,
    api.SourceType.RAW: Mode.RAW,
}


def parse_manifest(text):
    """
    Parses the given manifest text into an ordered list of objects.

    Empty documents are skipped and List objects are flattened.
    """
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as exc:
        raise ManifestParseError(str(exc)) from exc
    objects = []
    for document in documents:
        if not document:
            continue
        if not isinstance(document, dict):
            raise ManifestParseError(f"expected a mapping, got {type(document).__name__}")
        if document.get("kind", "").endswith("List") and "items" in document:
            items = document["items"] or []
        else:
            items = [document]
        for item in items:
            if not item.get("apiVersion") or not item.get("kind"):
                raise ManifestParseError("object is missing apiVersion or kind")
            if not item.get("metadata", {}).get("name"):
                raise ManifestParseError(f"{item['kind']} object is missing a name")
            objects.append(item)
    return objects


class Renderer(abc.ABC):
    """
    Base class for renderers that produce manifest text for a manifest.
    """
    def initialize(self, manifest):
        """
        Validates that the renderer can be used for the manifest.
        """

    async def render_prerequisites(self, manifest):
        """
        Returns the manifest text for the prerequisites of the manifest.
        """
        return ""

    async def apply_prerequisites(self, text):
        """
        Applies the given prerequisites to the target cluster.
        """

    async def cleanup_prerequisites(self, text):
        """
        Deletes the given prerequisites from the target cluster.
        """

    async def ensure_prerequisites(self, manifest):
        """
        Ensures that anything required before the rendered resources can be applied
        is present in the target cluster.
        """
        await self.apply_prerequisites(await self.render_prerequisites(manifest))

    @abc.abstractmethod
    async def render(self, manifest):
        """
        Returns the manifest text for the manifest.
        """

    async def remove_prerequisites(self, manifest):
        """
        Removes the prerequisites from the target cluster.
        """
        await self.cleanup_prerequisites(await self.render_prerequisites(manifest))


class HelmRenderer(Renderer):
    """
    Renders an install from a Helm chart.

    The CRDs shipped with the chart are treated as prerequisites.
    """
    def __init__(self, install, namespace, target):
        self.install = install
        self.namespace = namespace
        self.target = target
        self._chart = None
        self._templated = None

    def initialize(self, manifest):
        if not self.install.source.chart_name:
            raise RenderError(f"install '{self.install.name}' has no chart name")

    async def _get_chart(self):
        if self._chart is None:
            source = self.install.source
            self._chart = await self.target.helm_client.get_chart(
                source.chart_name,
                repo = source.url,
                version = source.version
            )
        return self._chart

    async def _template(self):
        # The CRDs and the chart resources come from a single templating run
        if self._templated is None:
            self._templated = list(
                await self.target.helm_client.template_resources(
                    await self._get_chart(),
                    self.install.name,
                    self.install.values,
                    namespace = self.namespace,
                    include_crds = True
                )
            )
        return self._templated

    async def _crd_infos(self, text):
        converter = ResourceToInfoConverter(self.target.ekclient, self.namespace)
        return await converter.objects_to_infos(parse_manifest(text))

    async def render_prerequisites(self, manifest):
        crds = [
            resource
            for resource in await self._template()
            if resource.get("kind") == "CustomResourceDefinition"
        ]
        return yaml.safe_dump_all(crds)

    async def apply_prerequisites(self, text):
        infos = await self._crd_infos(text)
        if not infos:
            return
        await sync.ConcurrentApply(
            self.target.ekclient,
            self.target.options.field_owner
        ).run(infos)
        # The chart resources cannot be applied until the CRDs are served
        await readiness.DeepReadyCheck(self.target.ekclient).run(infos)

    async def render(self, manifest):
        resources = [
            resource
            for resource in await self._template()
            if resource.get("kind") != "CustomResourceDefinition"
        ]
        return yaml.safe_dump_all(resources)

    async def cleanup_prerequisites(self, text):
        infos = await self._crd_infos(text)
        await sync.ConcurrentCleanup(self.target.ekclient).run(infos)


class KustomizeRenderer(Renderer):
    """
    Renders an install by building a kustomize overlay.
    """
    def __init__(self, install, executable = "kustomize"):
        self.install = install
        self.executable = executable

    @property
    def location(self):
        return self.install.source.path or self.install.source.url

    def initialize(self, manifest):
        if not self.location:
            raise RenderError(f"install '{self.install.name}' has no overlay location")

    async def _run(self, command):
        logger.info("Executing kustomize command '%s'", shlex.join(command))
        proc = await asyncio.create_subprocess_shell(
            shlex.join(command),
            stdout = asyncio.subprocess.PIPE,
            stderr = asyncio.subprocess.PIPE
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode == 0:
            return stdout
        else:
            raise CommandError(proc.returncode, stdout.decode(), stderr.decode())

    async def render(self, manifest):
        stdout = await self._run([self.executable, "build", self.location])
        return stdout.decode()


class RawRenderer(Renderer):
    """
    Renders an install from plain manifest files at a path or URL.
    """
    def __init__(self, install):
        self.install = install

    def initialize(self, manifest):
        source = self.install.source
        if not (source.path or source.url):
            raise RenderError(f"install '{self.install.name}' has no manifest location")

    def _read_path(self, path):
        path = pathlib.Path(path)
        if path.is_dir():
            files = sorted(
                p
                for p in path.iterdir()
                if p.is_file() and p.suffix in {".yaml", ".yml", ".json"}
            )
            return "\n---\n".join(p.read_text() for p in files)
        return path.read_text()

    async def render(self, manifest):
        source = self.install.source
        if source.path:
            return await asyncio.to_thread(self._read_path, source.path)
        async with httpx.AsyncClient() as http:
            response = await http.get(source.url, follow_redirects = True)
            response.raise_for_status()
        return response.text


class RenderCache:
    """
    Cache of rendered manifests, indexed by key and checked against a checksum of
    the inputs that produced them.
    """
    def __init__(self):
        self._entries = {}

    def get(self, key, checksum):
        entry = self._entries.get(key)
        if entry and entry[0] == checksum:
            return entry[1]
        return None

    def set(self, key, checksum, text):
        self._entries[key] = (checksum, text)

    def evict(self, manifest_key):
        """
        Removes every entry for the given manifest.
        """
        for key in [k for k in self._entries if k[0] == manifest_key]:
            del self._entries[key]


class CachedRenderer(Renderer):
    """
    Renderer that caches the output of another renderer.
    """
    def __init__(self, renderer, cache, key, checksum):
        self.renderer = renderer
        self.cache = cache
        self.key = key
        self.checksum = checksum

    def initialize(self, manifest):
        self.renderer.initialize(manifest)

    async def _cached(self, key, render):
        text = self.cache.get(key, self.checksum)
        if text is None:
            text = await render()
            self.cache.set(key, self.checksum, text)
        else:
            logger.debug("using cached render for %s", key)
        return text

    async def render_prerequisites(self, manifest):
        return await self._cached(
            (*self.key, "prerequisites"),
            lambda: self.renderer.render_prerequisites(manifest)
        )

    async def apply_prerequisites(self, text):
        await self.renderer.apply_prerequisites(text)

    async def cleanup_prerequisites(self, text):
        await self.renderer.cleanup_prerequisites(text)

    async def render(self, manifest):
        return await self._cached(self.key, lambda: self.renderer.render(manifest))


class CompositeRenderer(Renderer):
    """
    Renderer that joins the output of several renderers into one manifest.
    """
    def __init__(self, renderers):
        self.renderers = list(renderers)

    def initialize(self, manifest):
        for renderer in self.renderers:
            renderer.initialize(manifest)

    async def ensure_prerequisites(self, manifest):
        for renderer in self.renderers:
            await renderer.ensure_prerequisites(manifest)

    async def render(self, manifest):
        texts = [await renderer.render(manifest) for renderer in self.renderers]
        return "\n---\n".join(text for text in texts if text.strip())

    async def remove_prerequisites(self, manifest):
        # Prerequisites are removed in the reverse of the order they were created
        for renderer in reversed(self.renderers):
            await renderer.remove_prerequisites(manifest)


def renderer_for(
    manifest,
    install,
    namespace,
    target,
    cache = None,
    kustomize_executable = "kustomize"
):
    """
    Returns the renderer for the given resolved install.
    """
    mode = MODES[api.SourceType(install.source.type)]
    if mode == Mode.HELM:
        renderer = HelmRenderer(install, namespace, target)
    elif mode == Mode.KUSTOMIZE:
        renderer = KustomizeRenderer(install, kustomize_executable)
    else:
        # Raw sources are read on every render
        return RawRenderer(install)
    if cache is None:
        return renderer
    checksum = compute_checksum({
        "source": install.source.model_dump(mode = "json"),
        "values": install.values,
        "namespace": namespace,
    })
    return CachedRenderer(renderer, cache, (manifest.key, install.name), checksum)


def renderer_for_spec(manifest, spec, target, cache = None, kustomize_executable = "kustomize"):
    """
    Returns a renderer for all the installs in the resolved spec.
    """
    return CompositeRenderer(
        renderer_for(
            manifest,
            install,
            spec.namespace,
            target,
            cache,
            kustomize_executable
        )
        for install in spec.installs
    )
