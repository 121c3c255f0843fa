import pathlib
import tempfile
import unittest
from unittest import mock

from manifest_operator import render
from manifest_operator.models import v1alpha1 as api
from manifest_operator.resolver import ResolvedInstall, ResolvedSpec
from manifest_operator.objects import ManifestObject
from manifest_operator.tests import fakes


MULTI_DOCUMENT = """
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: a
---
---
apiVersion: v1
kind: List
items:
  - apiVersion: v1
    kind: ConfigMap
    metadata:
      name: b
  - apiVersion: v1
    kind: Secret
    metadata:
      name: c
"""


def install(name = "app", **source):
    source.setdefault("type", "raw")
    if source["type"] != "helm-chart":
        source.setdefault("path", "/manifests")
    return ResolvedInstall(
        name = name,
        source = api.InstallSource.model_validate(source),
        values = {"replicas": 1}
    )


class TestParseManifest(unittest.TestCase):
    def test_parse_skips_empty_documents_and_flattens_lists(self):
        objects = render.parse_manifest(MULTI_DOCUMENT)
        self.assertEqual(
            [(o["kind"], o["metadata"]["name"]) for o in objects],
            [("ConfigMap", "a"), ("ConfigMap", "b"), ("Secret", "c")]
        )

    def test_parse_empty(self):
        self.assertEqual(render.parse_manifest(""), [])

    def test_parse_invalid_yaml(self):
        with self.assertRaises(render.ManifestParseError):
            render.parse_manifest("kind: [unterminated")

    def test_parse_missing_kind(self):
        with self.assertRaises(render.ManifestParseError):
            render.parse_manifest("apiVersion: v1\nmetadata:\n  name: a\n")

    def test_parse_missing_name(self):
        with self.assertRaises(render.ManifestParseError):
            render.parse_manifest("apiVersion: v1\nkind: ConfigMap\nmetadata: {}\n")

    def test_parse_non_mapping(self):
        with self.assertRaises(render.ManifestParseError):
            render.parse_manifest("- a\n- b\n")


class TestRenderers(unittest.IsolatedAsyncioTestCase):
    async def test_raw_renderer_reads_directory(self):
        with tempfile.TemporaryDirectory() as directory:
            path = pathlib.Path(directory)
            (path / "b.yaml").write_text("apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: b\n")
            (path / "a.yaml").write_text("apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n")
            (path / "README.md").write_text("not a manifest")
            renderer = render.RawRenderer(install(path = directory))
            renderer.initialize(None)

            text = await renderer.render(None)

        names = [o["metadata"]["name"] for o in render.parse_manifest(text)]
        self.assertEqual(names, ["a", "b"])

    async def test_composite_renderer_joins_output(self):
        renderer = render.CompositeRenderer([
            fakes.StaticRenderer("apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n"),
            fakes.StaticRenderer(""),
            fakes.StaticRenderer("apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: b\n"),
        ])

        text = await renderer.render(None)

        names = [o["metadata"]["name"] for o in render.parse_manifest(text)]
        self.assertEqual(names, ["a", "b"])

    async def test_composite_renderer_removes_prerequisites_in_reverse(self):
        removed = []
        renderers = []
        for name in ("first", "second"):
            renderer = mock.Mock(spec = render.Renderer)
            renderer.remove_prerequisites = mock.AsyncMock(
                side_effect = lambda manifest, name = name: removed.append(name)
            )
            renderers.append(renderer)

        await render.CompositeRenderer(renderers).remove_prerequisites(None)

        self.assertEqual(removed, ["second", "first"])

    async def test_cached_renderer(self):
        inner = fakes.StaticRenderer("first")
        inner.render = mock.AsyncMock(return_value = "first")
        cache = render.RenderCache()

        renderer = render.CachedRenderer(inner, cache, (("ns", "m"), "app"), "sum1")
        self.assertEqual(await renderer.render(None), "first")
        self.assertEqual(await renderer.render(None), "first")
        inner.render.assert_awaited_once()

        # A different checksum renders again
        inner.render.return_value = "second"
        renderer = render.CachedRenderer(inner, cache, (("ns", "m"), "app"), "sum2")
        self.assertEqual(await renderer.render(None), "second")

    async def test_cached_helm_renderer_templates_chart_once(self):
        crd = {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {"name": "things.example.com"},
        }
        configmap = fakes.configmap("a")
        helm_client = mock.Mock()
        helm_client.get_chart = mock.AsyncMock()
        helm_client.template_resources = mock.AsyncMock(return_value = [crd, configmap])
        target = fakes.StaticClientResolver(fakes.FakeCluster(), helm_client).target
        chart = install(type = "helm-chart", chartName = "app", url = "https://charts.example.com")
        cache = render.RenderCache()

        applied = []
        for _ in range(2):
            helm = render.HelmRenderer(chart, "default", target)
            helm.apply_prerequisites = mock.AsyncMock(side_effect = applied.append)
            renderer = render.CachedRenderer(helm, cache, (("default", "test"), "app"), "sum")
            await renderer.ensure_prerequisites(None)
            text = await renderer.render(None)

        helm_client.template_resources.assert_awaited_once()
        self.assertEqual([render.parse_manifest(t) for t in applied], [[crd], [crd]])
        self.assertEqual(render.parse_manifest(text), [configmap])

        # Evicting the manifest drops the cached prerequisites too
        cache.evict(("default", "test"))
        self.assertIsNone(cache.get((("default", "test"), "app", "prerequisites"), "sum"))

    def test_render_cache_evict(self):
        cache = render.RenderCache()
        cache.set((("ns", "a"), "one"), "sum", "text")
        cache.set((("ns", "a"), "two"), "sum", "text")
        cache.set((("ns", "b"), "one"), "sum", "text")

        cache.evict(("ns", "a"))

        self.assertIsNone(cache.get((("ns", "a"), "one"), "sum"))
        self.assertIsNone(cache.get((("ns", "a"), "two"), "sum"))
        self.assertEqual(cache.get((("ns", "b"), "one"), "sum"), "text")

    async def test_kustomize_renderer_failure(self):
        renderer = render.KustomizeRenderer(install(type = "kustomize"), "kustomize")
        renderer._run = mock.AsyncMock(side_effect = render.CommandError(1, "", "bad overlay"))

        with self.assertRaises(render.CommandError) as ctx:
            await renderer.render(None)

        self.assertEqual(str(ctx.exception), "bad overlay")


class TestRendererFor(unittest.TestCase):
    def setUp(self):
        self.manifest = ManifestObject(fakes.manifest_body())
        self.target = fakes.StaticClientResolver(fakes.FakeCluster()).target

    def test_raw_is_never_cached(self):
        renderer = render.renderer_for(
            self.manifest,
            install(),
            "default",
            self.target,
            render.RenderCache()
        )
        self.assertIsInstance(renderer, render.RawRenderer)

    def test_kustomize_is_cached(self):
        renderer = render.renderer_for(
            self.manifest,
            install(type = "kustomize"),
            "default",
            self.target,
            render.RenderCache()
        )
        self.assertIsInstance(renderer, render.CachedRenderer)
        self.assertIsInstance(renderer.renderer, render.KustomizeRenderer)
        self.assertEqual(renderer.key, (("default", "test"), "app"))

    def test_helm_without_cache(self):
        renderer = render.renderer_for(
            self.manifest,
            install(type = "helm-chart", chartName = "app", url = "https://charts.example.com"),
            "default",
            self.target
        )
        self.assertIsInstance(renderer, render.HelmRenderer)

    def test_checksum_depends_on_values(self):
        cache = render.RenderCache()
        first = install(type = "kustomize")
        second = install(type = "kustomize")
        second.values = {"replicas": 2}
        checksums = [
            render.renderer_for(self.manifest, i, "default", self.target, cache).checksum
            for i in (first, second)
        ]
        self.assertNotEqual(checksums[0], checksums[1])

    def test_renderer_for_spec(self):
        spec = ResolvedSpec(installs = [install("one"), install("two")], namespace = "default")
        renderer = render.renderer_for_spec(self.manifest, spec, self.target)
        self.assertIsInstance(renderer, render.CompositeRenderer)
        self.assertEqual([r.install.name for r in renderer.renderers], ["one", "two"])
