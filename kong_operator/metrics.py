import asyncio
import functools
import logging

from aiohttp import web

from . import resources
from .config import settings
from .models import v1 as api


logger = logging.getLogger(__name__)


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


class KongClusterMetric(Metric):
    prefix = "kong_operator_cluster"

    def common_labels(self, obj):
        return {
            "cluster_namespace": obj["metadata"]["namespace"],
            "cluster_name": obj["metadata"]["name"],
        }


class KongClusterInfo(KongClusterMetric):
    suffix = "info"
    description = "Basic info for the Kong cluster"

    def extra_labels(self, obj):
        return {"image": obj["spec"].get("baseImage", "")}


class KongClusterDesiredReplicas(KongClusterMetric):
    suffix = "desired_replicas"
    type = "gauge"
    description = "The number of replicas requested for the Kong cluster"

    def value(self, obj):
        return obj["spec"].get("replicas", 0)


class KongDeploymentReplicas(Metric):
    prefix = "kong_operator_deployment"
    suffix = "replicas"
    type = "gauge"
    description = "The number of ready and available replicas for the Kong deployment"

    def records(self):
        for obj in self._objs:
            labels = {"namespace": obj["metadata"]["namespace"]}
            status = obj.get("status", {})
            yield {**labels, "kind": "ready"}, status.get("readyReplicas", 0)
            yield {**labels, "kind": "available"}, status.get("availableReplicas", 0)


def escape(content):
    """Escape the given content for use in metric output."""
    return content.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


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


def metric_sources():
    """
    Returns the (api version, resource, list params, metric classes) to collect.
    """
    return [
        (
            f"{settings.api_group}/{api.KongCluster._meta.version}",
            api.KongCluster._meta.plural_name,
            {},
            [KongClusterInfo, KongClusterDesiredReplicas],
        ),
        (
            resources.APPS_API_VERSION,
            "deployments",
            {"labels": {"name": resources.DEPLOYMENT_NAME}},
            [KongDeploymentReplicas],
        ),
    ]


async def metrics_handler(ekclient, request):
    """Produce metrics for the operator."""
    metrics = []
    for api_version, resource, params, metric_classes in metric_sources():
        ekresource = await ekclient.api(api_version).resource(resource)
        resource_metrics = [klass() for klass in metric_classes]
        async for obj in ekresource.list(all_namespaces = True, **params):
            for metric in resource_metrics:
                metric.add_obj(obj)
        metrics.extend(resource_metrics)

    content_type, content = render_openmetrics(*metrics)
    return web.Response(headers = {"Content-Type": content_type}, body = content)


async def metrics_server(ekclient):
    """Launch a lightweight HTTP server to serve the metrics endpoint."""
    app = web.Application()
    app.add_routes([web.get("/metrics", functools.partial(metrics_handler, ekclient))])

    runner = web.AppRunner(app, handle_signals = False, shutdown_timeout = 1.0)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", settings.metrics.port)
    await site.start()
    logger.info("serving metrics on port %d", settings.metrics.port)

    # Sleep until we need to clean up
    try:
        await asyncio.Event().wait()
    finally:
        await asyncio.shield(runner.cleanup())
