import asyncio
import logging
import sys

import kopf

from easykube import Configuration
from kube_custom_resource import CustomResourceRegistry
from pydantic.json import pydantic_encoder

from . import models
from .bootstrap import BootstrapError, ensure_schema_registered, wait_for_apis
from .config import settings
from .controller import Controller
from .metrics import metrics_server

logger = logging.getLogger(__name__)


def create_registry():
    """
    Returns a registry of custom resources populated from the models module.
    """
    registry = CustomResourceRegistry(settings.api_group, settings.crd_categories)
    registry.discover_models(models)
    return registry


def create_client():
    """
    Returns an easykube client configured from the environment.
    """
    return (
        Configuration
            .from_environment(json_encoder = pydantic_encoder)
            .async_client(default_field_manager = settings.easykube_field_manager)
    )


async def initialise(client, registry):
    """
    Prepares the cluster for reconciliation.

    Raises BootstrapError if the operator cannot run.
    """
    await ensure_schema_registered(client, registry)
    await wait_for_apis(client, registry)


@kopf.on.startup()
async def on_startup(memo, **kwargs):
    """
    Registers the CRDs and starts the controller.
    """
    memo.ekclient = create_client()
    try:
        await initialise(memo.ekclient, create_registry())
    except BootstrapError:
        logger.exception("could not initialise kong operator - exiting")
        sys.exit(1)
    memo.controller = Controller(memo.ekclient)
    memo.controller.start()
    if settings.metrics.enabled:
        memo.metrics_task = asyncio.create_task(metrics_server(memo.ekclient))


@kopf.on.cleanup()
async def on_cleanup(memo, **kwargs):
    """
    Runs on operator shutdown.
    """
    metrics_task = memo.get("metrics_task")
    if metrics_task:
        metrics_task.cancel()
        await asyncio.wait({metrics_task})
    controller = memo.get("controller")
    if controller:
        await controller.stop()
    ekclient = memo.get("ekclient")
    if ekclient:
        await ekclient.aclose()


@kopf.on.probe(id = "controller")
def controller_probe(memo, **kwargs):
    """
    Reports whether the controller is running for the liveness endpoint.
    """
    controller = memo.get("controller")
    if not controller or not controller.running:
        raise kopf.TemporaryError("controller is not running")
    return "running"
