import asyncio
import datetime
import functools

import easykube
from aiohttp import web

from .config import settings


class Metric:
    # The prefix for the metric
    prefix = None
    # The suffix for the metric
    suffix = None
    # The type of the metric - info or gauge
    type = "info"
    # The description of the metric
    description = None

    def __init__(self):
        self._objs = []

    def add_obj(self, obj):
        self._objs.append(obj)

    @property
    def name(self):
        return f"{self.prefix}_{self.suffix}"

    def labels(self, obj):
        """The labels for the given object."""
        return {**self.common_labels(obj), **self.extra_labels(obj)}

    def common_labels(self, obj):
        """Common labels for the object."""
        return {}

    def extra_labels(self, obj):
        """Extra labels for the object."""
        return {}

    def value(self, obj):
        """The value for the given object."""
        return 1

    def records(self):
        """Returns the records for the metric, i.e. a list of (labels, value) tuples."""
        for obj in self._objs:
            yield self.labels(obj), self.value(obj)


class ManifestMetric(Metric):
    prefix = "manifest_operator_manifest"

    def common_labels(self, obj):
        return {
            "manifest_namespace": obj["metadata"]["namespace"],
            "manifest_name": obj["metadata"]["name"],
        }


class ManifestState(ManifestMetric):
    suffix = "state"
    description = "Manifest state"

    def extra_labels(self, obj):
        return {"state": obj.get("status", {}).get("state") or "Unknown"}


class ManifestSyncEnabled(ManifestMetric):
    suffix = "sync_enabled"
    type = "gauge"
    description = "Indicates whether the manifest targets a remote cluster"

    def value(self, obj):
        return 1 if obj.get("spec", {}).get("sync", {}).get("enabled", False) else 0


class ManifestSyncedCount(ManifestMetric):
    suffix = "synced_count"
    type = "gauge"
    description = "The number of resources last applied for the manifest"

    def value(self, obj):
        return len(obj.get("status", {}).get("synced", []))


class ManifestInstallCount(ManifestMetric):
    suffix = "install_count"
    type = "gauge"
    description = "The number of installs declared by the manifest"

    def value(self, obj):
        return len(obj.get("spec", {}).get("installs", []))


class ManifestInstall(ManifestMetric):
    suffix = "install"
    description = "The installs declared by the manifest"

    def records(self):
        for obj in self._objs:
            labels = super().labels(obj)
            spec = obj.get("spec", {})
            default_source = spec.get("defaultConfig") or {}
            for install in spec.get("installs", []):
                source = install.get("source") or default_source
                install_labels = {
                    **labels,
                    "install": install["name"],
                    "source_type": source.get("type", ""),
                    "chart_name": source.get("chartName", ""),
                    "version": source.get("version", ""),
                }
                yield install_labels, 1


class ManifestCondition(ManifestMetric):
    suffix = "condition"
    description = "Manifest condition status"

    def records(self):
        for obj in self._objs:
            labels = super().labels(obj)
            for condition in obj.get("status", {}).get("conditions", []):
                condition_labels = {
                    **labels,
                    "condition": condition["type"],
                    "status": condition.get("status", "Unknown"),
                    "reason": condition.get("reason", ""),
                }
                yield condition_labels, 1


class ManifestLastOperation(ManifestMetric):
    suffix = "last_operation"
    type = "gauge"
    description = "The time of the last operation for the manifest"

    def value(self, obj):
        last_operation = obj.get("status", {}).get("lastOperation") or {}
        last_update = last_operation.get("lastUpdateTime")
        return as_timestamp(last_update) if last_update else 0


def escape(content):
    """Escape the given content for use in metric output."""
    return content.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


def as_timestamp(datetime_str):
    """Converts a datetime string to a timestamp."""
    dt = datetime.datetime.fromisoformat(datetime_str.replace("Z", "+00:00"))
    return round(dt.timestamp())


def format_value(value):
    """Formats a value for output, e.g. using Go formatting."""
    formatted = repr(value)
    dot = formatted.find(".")
    if value > 0 and dot > 6:
        mantissa = f"{formatted[0]}.{formatted[1:dot]}{formatted[dot + 1:]}".rstrip(
            "0."
        )
        return f"{mantissa}e+0{dot - 1}"
    else:
        return formatted


def render_openmetrics(*metrics):
    """Renders the metrics using OpenMetrics text format."""
    output = []
    for metric in metrics:
        if metric.description:
            output.append(f"# HELP {metric.name} {escape(metric.description)}\n")
        output.append(f"# TYPE {metric.name} {metric.type}\n")

        for labels, value in metric.records():
            if labels:
                labelstr = "{{{0}}}".format(
                    ",".join([f'{k}="{escape(v)}"' for k, v in sorted(labels.items())])
                )
            else:
                labelstr = ""
            output.append(f"{metric.name}{labelstr} {format_value(value)}\n")
    output.append("# EOF\n")

    return (
        "application/openmetrics-text; version=1.0.0; charset=utf-8",
        "".join(output).encode("utf-8"),
    )


METRICS = {
    settings.api_group: {
        "manifests": [
            ManifestState,
            ManifestSyncEnabled,
            ManifestSyncedCount,
            ManifestInstallCount,
            ManifestInstall,
            ManifestCondition,
            ManifestLastOperation,
        ],
    },
}


async def metrics_handler(ekclient, request):
    """Produce metrics for the operator."""
    metrics = []
    for api_group, resources in METRICS.items():
        ekapi = await ekclient.api_preferred_version(api_group)
        for resource, metric_classes in resources.items():
            ekresource = await ekapi.resource(resource)
            resource_metrics = [klass() for klass in metric_classes]
            async for obj in ekresource.list(all_namespaces=True):
                for metric in resource_metrics:
                    metric.add_obj(obj)
            metrics.extend(resource_metrics)

    content_type, content = render_openmetrics(*metrics)
    return web.Response(headers={"Content-Type": content_type}, body=content)


async def metrics_server():
    """Launch a lightweight HTTP server to serve the metrics endpoint."""
    ekclient = easykube.Configuration.from_environment().async_client()

    app = web.Application()
    app.add_routes([web.get("/metrics", functools.partial(metrics_handler, ekclient))])

    runner = web.AppRunner(app, handle_signals=False)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", settings.metrics.port, shutdown_timeout=1.0)
    await site.start()

    # Sleep until we need to clean up
    try:
        await asyncio.Event().wait()
    finally:
        await asyncio.gather(
            asyncio.shield(runner.cleanup()),
            asyncio.shield(ekclient.aclose())
        )
