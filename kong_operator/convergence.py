import asyncio
import dataclasses
import enum
import logging

from . import resources
from .config import settings
from .template import default_loader
from .utils import is_conflict, is_not_found, retry


logger = logging.getLogger(__name__)


class Intent(enum.Enum):
    """
    The outcome that a convergence pass is working towards.
    """
    #: The Kong cluster should exist and match the desired state
    ENSURE = "Ensure"
    #: All the objects belonging to the Kong cluster should be removed
    TEARDOWN = "Teardown"


@dataclasses.dataclass(frozen = True)
class StepFailure:
    """
    Records a teardown step that failed without aborting the teardown.
    """
    #: The kind of the object that the step acted on
    kind: str
    #: The name of the object that the step acted on
    name: str
    #: The operation that failed, e.g. delete
    operation: str
    #: The exception raised by the operation
    error: Exception

    def __str__(self):
        return f"could not {self.operation} {self.kind} {self.name}: {self.error}"


class Converger:
    """
    Brings the objects belonging to a Kong cluster into line with its desired state.

    Every step is idempotent, so a pass can be repeated at any time, interleaved with
    another pass for the same cluster or run after a partial failure.
    """
    def __init__(self, client, loader = default_loader):
        self.client = client
        self.loader = loader

    async def _resource(self, api_version, name):
        return await self.client.api(api_version).resource(name)

    async def _services(self):
        return await self._resource(resources.CORE_API_VERSION, "services")

    async def _deployments(self):
        return await self._resource(resources.APPS_API_VERSION, "deployments")

    async def _replica_sets(self):
        return await self._resource(resources.APPS_API_VERSION, "replicasets")

    async def _with_retry(self, func, *args, description, **kwargs):
        return await retry(
            func,
            *args,
            max_attempts = settings.api_retry.max_attempts,
            base_delay = settings.api_retry.base_delay,
            max_delay = settings.api_retry.max_delay,
            description = description,
            **kwargs
        )

    async def converge(self, cluster, intent):
        """
        Runs a single convergence pass for the given cluster.

        Returns a list of the steps that failed without aborting the pass, which is
        only ever non-empty for a teardown.
        """
        if intent is Intent.ENSURE:
            await self.ensure(cluster)
            return []
        else:
            return await self.teardown(cluster)

    async def ensure(self, cluster):
        """
        Ensures that the services and deployment for the cluster exist and that the
        deployment has the desired number of replicas.
        """
        namespace = cluster.metadata.namespace
        await self.ensure_service(resources.PROXY_SERVICE_NAME, "proxy-service.yaml", namespace)
        await self.ensure_service(resources.ADMIN_SERVICE_NAME, "admin-service.yaml", namespace)
        await self.ensure_deployment(cluster)

    async def ensure_service(self, name, template, namespace):
        """
        Creates the named service from the template if it does not already exist.

        Existing services are left as they are.
        """
        ekservices = await self._services()
        try:
            _ = await ekservices.fetch(name, namespace = namespace)
        except Exception as exc:
            if not is_not_found(exc):
                logger.error("could not get service %s/%s: %s", namespace, name, exc)
                raise
        else:
            return
        logger.info("service %s/%s not found - creating", namespace, name)
        service = self.loader.load(template, namespace = namespace)
        try:
            await self._with_retry(
                ekservices.create,
                service,
                namespace = namespace,
                description = f"create service {namespace}/{name}"
            )
        except Exception as exc:
            # Another pass may have created the service since we looked
            if is_conflict(exc):
                return
            logger.error("could not create service %s/%s: %s", namespace, name, exc)
            raise

    async def ensure_deployment(self, cluster):
        """
        Creates the Kong deployment if it does not exist, or scales it to the desired
        number of replicas if it does.

        Only the replica count of an existing deployment is reconciled. Any other
        changes to the deployment are left in place.
        """
        namespace = cluster.metadata.namespace
        name = resources.DEPLOYMENT_NAME
        ekdeployments = await self._deployments()
        for _ in range(settings.conflict_retries):
            try:
                deployment = await ekdeployments.fetch(name, namespace = namespace)
            except Exception as exc:
                if not is_not_found(exc):
                    logger.error("could not get deployment %s/%s: %s", namespace, name, exc)
                    raise
                deployment = None
            if deployment is None:
                logger.info("deployment %s/%s not found - creating", namespace, name)
                deployment = self.loader.load(
                    "deployment.yaml",
                    namespace = namespace,
                    spec = cluster.spec
                )
                try:
                    await self._with_retry(
                        ekdeployments.create,
                        deployment,
                        namespace = namespace,
                        description = f"create deployment {namespace}/{name}"
                    )
                except Exception as exc:
                    # If the deployment appeared since we looked, check the replicas again
                    if is_conflict(exc):
                        continue
                    logger.error("could not create deployment %s/%s: %s", namespace, name, exc)
                    raise
                return
            if deployment["spec"].get("replicas") == cluster.spec.replicas:
                return
            try:
                await self._scale(ekdeployments, deployment, cluster.spec.replicas)
            except Exception as exc:
                if is_conflict(exc):
                    logger.info(
                        "deployment %s/%s was modified while scaling - retrying",
                        namespace,
                        name
                    )
                    continue
                logger.error("could not scale deployment %s/%s: %s", namespace, name, exc)
                raise
            return
        raise ScaleConflictError(namespace, name)

    async def _scale(self, ekdeployments, deployment, replicas):
        """
        Sets the replicas of the fetched deployment and replaces it.

        The replace carries the resource version that was fetched, so it fails with a
        conflict if the deployment has changed in the meantime.
        """
        name = deployment["metadata"]["name"]
        namespace = deployment["metadata"]["namespace"]
        logger.info(
            "scaling deployment %s/%s from %s to %d replicas",
            namespace,
            name,
            deployment["spec"].get("replicas"),
            replicas
        )
        deployment["spec"]["replicas"] = replicas
        return await self._with_retry(
            ekdeployments.replace,
            name,
            deployment,
            namespace = namespace,
            description = f"scale deployment {namespace}/{name}"
        )

    async def teardown(self, cluster):
        """
        Removes the deployment, replica sets and services for the cluster.

        Teardown is best effort: once the deployment has been fetched, each step is
        attempted regardless of whether the previous steps succeeded. The failed steps
        are returned.
        """
        namespace = cluster.metadata.namespace
        failures = []
        failures.extend(await self.delete_deployment(namespace))
        await self.wait_for_replica_sets(namespace)
        failures.extend(await self.delete_replica_sets(namespace))
        for name in (resources.PROXY_SERVICE_NAME, resources.ADMIN_SERVICE_NAME):
            failure = await self.delete_service(name, namespace)
            if failure:
                failures.append(failure)
        if failures:
            logger.warning(
                "teardown of kong cluster %s/%s was incomplete: %s",
                namespace,
                cluster.metadata.name,
                "; ".join(str(f) for f in failures)
            )
        else:
            logger.info("teardown of kong cluster %s/%s complete", namespace, cluster.metadata.name)
        return failures

    async def delete_deployment(self, namespace):
        """
        Scales the deployment to zero and then deletes it.

        Scaling down first gives the pods a chance to terminate gracefully before the
        deployment goes away. A deployment that cannot be fetched aborts the teardown.
        """
        name = resources.DEPLOYMENT_NAME
        ekdeployments = await self._deployments()
        failures = []
        for _ in range(settings.conflict_retries):
            try:
                deployment = await ekdeployments.fetch(name, namespace = namespace)
            except Exception as exc:
                if is_not_found(exc):
                    logger.info("deployment %s/%s already deleted", namespace, name)
                    return failures
                logger.error("could not get deployment %s/%s: %s", namespace, name, exc)
                raise
            try:
                await self._scale(ekdeployments, deployment, 0)
            except Exception as exc:
                if is_conflict(exc):
                    continue
                logger.error("could not scale deployment %s/%s: %s", namespace, name, exc)
                failures.append(StepFailure("deployment", name, "scale", exc))
            else:
                logger.info("scaled deployment %s/%s to zero", namespace, name)
            break
        else:
            exc = ScaleConflictError(namespace, name)
            logger.error("could not scale deployment %s/%s: %s", namespace, name, exc)
            failures.append(StepFailure("deployment", name, "scale", exc))
        failure = await self._delete(ekdeployments, "deployment", name, namespace)
        if failure:
            failures.append(failure)
        return failures

    async def _list_replica_sets(self, ekreplicasets, namespace):
        return [
            replica_set
            async for replica_set in ekreplicasets.list(
                labels = resources.REPLICA_SET_LABELS,
                namespace = namespace
            )
        ]

    async def wait_for_replica_sets(self, namespace):
        """
        Waits for the replica sets of the deployment to be garbage collected, up to the
        configured timeout.

        Returns true if no replica sets remain, false otherwise.
        """
        ekreplicasets = await self._replica_sets()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.teardown.settle_timeout
        while True:
            try:
                remaining = await self._list_replica_sets(ekreplicasets, namespace)
            except Exception as exc:
                logger.warning("could not list replica sets in %s: %s", namespace, exc)
                return False
            if not remaining:
                return True
            if loop.time() >= deadline:
                logger.info(
                    "%d replica set(s) remain in %s after %.1fs - deleting",
                    len(remaining),
                    namespace,
                    settings.teardown.settle_timeout
                )
                return False
            await asyncio.sleep(settings.teardown.poll_interval)

    async def delete_replica_sets(self, namespace):
        """
        Deletes any remaining replica sets for the deployment.

        A failure to delete one replica set does not prevent the others from being deleted.
        """
        ekreplicasets = await self._replica_sets()
        try:
            replica_sets = await self._list_replica_sets(ekreplicasets, namespace)
        except Exception as exc:
            logger.error("could not list replica sets in %s: %s", namespace, exc)
            return [StepFailure("replicaset", "*", "list", exc)]
        failures = []
        for replica_set in replica_sets:
            failure = await self._delete(
                ekreplicasets,
                "replicaset",
                replica_set["metadata"]["name"],
                namespace
            )
            if failure:
                failures.append(failure)
        return failures

    async def delete_service(self, name, namespace):
        """
        Deletes the named service, returning a failure if it could not be deleted.
        """
        return await self._delete(await self._services(), "service", name, namespace)

    async def _delete(self, ekresource, kind, name, namespace):
        try:
            await self._with_retry(
                ekresource.delete,
                name,
                namespace = namespace,
                description = f"delete {kind} {namespace}/{name}"
            )
        except Exception as exc:
            if is_not_found(exc):
                return None
            logger.error("could not delete %s %s/%s: %s", kind, namespace, name, exc)
            return StepFailure(kind, name, "delete", exc)
        else:
            logger.info("deleted %s %s/%s", kind, namespace, name)
            return None


class ScaleConflictError(Exception):
    """
    Raised when a deployment keeps changing underneath a scale operation.
    """
    def __init__(self, namespace, name):
        super().__init__(
            f"deployment {namespace}/{name} changed on every attempt to scale it"
        )
