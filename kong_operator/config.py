from configomatic import (
    Configuration as BaseConfiguration,
)
from configomatic import (
    LoggingConfiguration,
    Section,
)
from pydantic import (
    Field,
    ValidationInfo,
    confloat,
    conint,
    constr,
    field_validator,
)


class BackoffConfiguration(Section):
    """
    Configuration for an exponential backoff between attempts.
    """

    #: The delay before the first retry, in seconds
    base_delay: confloat(gt=0) = 1.0
    #: The maximum delay between attempts, in seconds
    max_delay: confloat(gt=0) = Field(30.0, validate_default=True)

    @field_validator("max_delay")
    @classmethod
    def validate_max_delay(cls, v, info: ValidationInfo):
        """
        Ensures that the maximum delay is not less than the base delay.
        """
        base_delay = info.data.get("base_delay")
        if base_delay is not None and v < base_delay:
            raise ValueError("must be greater than or equal to base_delay")
        return v


class RetryConfiguration(BackoffConfiguration):
    """
    Configuration for bounded retries of mutating API calls.
    """

    #: The maximum number of attempts, including the first
    max_attempts: conint(ge=1) = 5
    base_delay: confloat(gt=0) = 0.5
    max_delay: confloat(gt=0) = Field(10.0, validate_default=True)


class TeardownConfiguration(Section):
    """
    Configuration for the teardown of a Kong cluster.
    """

    #: The maximum time to wait for replica sets to be garbage collected
    #: after the deployment is deleted, in seconds
    settle_timeout: confloat(ge=0) = 30.0
    #: The interval between checks for remaining replica sets, in seconds
    poll_interval: confloat(gt=0) = 2.0


class MetricsConfiguration(Section):
    """
    Configuration for the metrics server.
    """

    #: Indicates whether the metrics server should be started
    enabled: bool = True
    #: The port to serve metrics on
    port: conint(gt=0, lt=65536) = 8080


class Configuration(
    BaseConfiguration,
    default_path="/etc/kong-operator/config.yaml",
    path_env_var="KONG_OPERATOR_CONFIG",
    env_prefix="KONG_OPERATOR",
):
    """
    Top-level configuration model.
    """

    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    #: The API group of the Kong cluster CRD
    api_group: constr(min_length=1) = "enterprises.upmc.com"
    #: A list of categories to place CRDs into
    crd_categories: list[constr(min_length=1)] = Field(
        default_factory=lambda: ["kong"]
    )

    #: The field manager name to use for server-side apply
    easykube_field_manager: constr(min_length=1) = "kong-operator"

    #: The number of seconds between full reconciliations of all Kong clusters
    timer_interval: conint(gt=0) = 60

    #: The number of seconds to wait before retrying a failed list of Kong clusters
    list_retry_delay: confloat(gt=0) = 5.0

    #: The number of times a replace is re-attempted after a conflict
    conflict_retries: conint(ge=1) = 5

    #: The backoff used when the watch connection is lost
    watch_retry: BackoffConfiguration = Field(default_factory=BackoffConfiguration)

    #: The bounded retry used for create, replace and delete calls
    api_retry: RetryConfiguration = Field(default_factory=RetryConfiguration)

    #: The teardown configuration
    teardown: TeardownConfiguration = Field(default_factory=TeardownConfiguration)

    #: The metrics configuration
    metrics: MetricsConfiguration = Field(default_factory=MetricsConfiguration)


settings = Configuration()
