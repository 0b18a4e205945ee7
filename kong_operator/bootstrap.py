import logging

from . import resources
from .config import settings
from .utils import is_conflict, is_not_found, is_transient, retry


logger = logging.getLogger(__name__)


class BootstrapError(Exception):
    """
    Raised when the operator cannot prepare the cluster for reconciliation.
    """


def crd_name(crd):
    """
    Returns the name of the CustomResourceDefinition for the given registry entry.
    """
    return f"{crd.plural_name}.{crd.api_group}"


async def ensure_schema_registered(client, registry):
    """
    Registers the CRD for each model in the registry unless it already exists.

    Safe to call on every start, including concurrently from more than one process.
    Raises BootstrapError if the existence of a CRD cannot be determined or a missing
    CRD cannot be created.
    """
    ekcrds = await client.api(resources.APIEXTENSIONS_API_VERSION).resource(
        "customresourcedefinitions"
    )
    for crd in registry:
        name = crd_name(crd)
        try:
            _ = await ekcrds.fetch(name)
        except Exception as exc:
            if not is_not_found(exc):
                raise BootstrapError(f"could not get CRD {name}: {exc}") from exc
        else:
            logger.info("CRD %s already exists - skipping", name)
            continue
        try:
            _ = await ekcrds.create(crd.kubernetes_resource())
        except Exception as exc:
            # Another process registered the CRD in the time since we looked
            if is_conflict(exc):
                logger.info("CRD %s was created concurrently - skipping", name)
                continue
            raise BootstrapError(f"could not create CRD {name}: {exc}") from exc
        logger.info("created CRD %s", name)


async def wait_for_apis(client, registry):
    """
    Waits for the API of each CRD in the registry to be served.

    Raises BootstrapError if an API does not become available after the configured
    number of attempts.
    """
    for crd in registry:
        preferred_version = next(k for k, v in crd.versions.items() if v.storage)
        api_version = f"{crd.api_group}/{preferred_version}"
        try:
            _ = await retry(
                client.get,
                f"/apis/{api_version}/{crd.plural_name}",
                max_attempts = settings.api_retry.max_attempts,
                base_delay = settings.api_retry.base_delay,
                max_delay = settings.api_retry.max_delay,
                retry_if = lambda exc: is_not_found(exc) or is_transient(exc),
                description = f"check api for {crd.plural_name}.{crd.api_group}"
            )
        except Exception as exc:
            raise BootstrapError(
                f"api for {crd.plural_name}.{crd.api_group} not available: {exc}"
            ) from exc
