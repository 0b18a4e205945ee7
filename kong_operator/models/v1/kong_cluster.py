from kube_custom_resource import CustomResource, schema
from pydantic import Field


class KongClusterSpec(schema.BaseModel):
    """
    The spec for a managed Kong cluster.
    """

    replicas: schema.conint(ge=0) = Field(
        ..., description="The number of Kong replicas to run."
    )
    base_image: schema.constr(min_length=1) = Field(
        ..., description="The container image to use for the Kong replicas."
    )


class KongCluster(
    CustomResource,
    printer_columns=[
        {
            "name": "Replicas",
            "type": "integer",
            "jsonPath": ".spec.replicas",
        },
        {
            "name": "Image",
            "type": "string",
            "jsonPath": ".spec.baseImage",
        },
    ],
):
    """
    Managed kong clusters.
    """

    spec: KongClusterSpec
