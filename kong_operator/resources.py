#: API versions of the managed objects
CORE_API_VERSION = "v1"
APPS_API_VERSION = "apps/v1"
APIEXTENSIONS_API_VERSION = "apiextensions.k8s.io/v1"


#: Names of the objects that make up a Kong cluster
#: These must not change, as existing deployments are found using them
PROXY_SERVICE_NAME = "kong-proxy"
ADMIN_SERVICE_NAME = "kong-admin"
DEPLOYMENT_NAME = "kong"
POSTGRES_SECRET_NAME = "kong-postgres"

#: The keys of the Postgres secret that are exposed to Kong
POSTGRES_SECRET_KEYS = [
    "KONG_PG_USER",
    "KONG_PG_PASSWORD",
    "KONG_PG_HOST",
    "KONG_PG_DATABASE",
]

#: The labels that identify the replica sets created for the Kong deployment
REPLICA_SET_LABELS = {
    "app": "kong",
    "name": DEPLOYMENT_NAME,
}
