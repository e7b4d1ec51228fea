"""
Cross-cluster client layer.

Provides authenticated, instrumented access to the dynamic custom object
APIs of the local and the remote cluster.
"""

import json
import logging
import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

import google.auth
import google.auth.exceptions
from google.auth.transport.requests import Request
from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client import rest
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from errors import CredentialsError
from metrics import (
    CLIENT_LATENCY,
    CLIENT_REQUEST_BYTES,
    CLIENT_REQUESTS,
    CLIENT_RESPONSE_BYTES,
    LOCATION_LOCAL,
    LOCATION_REMOTE,
)

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
PING_TIMEOUT = 5


def _body_size(body: Any) -> int:
    if body is None:
        return 0
    if isinstance(body, (bytes, str)):
        return len(body)
    try:
        return len(json.dumps(body))
    except (TypeError, ValueError):
        return 0


def _response_size(response: Any) -> int:
    """Size of a response body, without consuming streamed content."""
    if isinstance(response, rest.RESTResponse):
        if isinstance(response.data, (bytes, str)):
            return len(response.data)
        raw = getattr(response, "urllib3_response", None) or getattr(
            response, "response", None
        )
    else:
        raw = response
    length = (getattr(raw, "headers", None) or {}).get("content-length", "")
    return int(length) if str(length).isdigit() else 0


class InstrumentedApiClient(client.ApiClient):
    """
    ApiClient that records request metrics tagged with the cluster location.

    Metrics are taken at the REST transport, which every API call and
    watch stream passes through. In verbose mode every request and
    response status is logged.
    """

    def __init__(
        self,
        configuration: client.Configuration,
        location: str,
        verbose: bool = False,
    ):
        super().__init__(configuration)
        self.location = location
        self.verbose = verbose
        self.rest_client.request = self._instrument(self.rest_client.request)

    def _instrument(self, send):
        def request(method, url, *args, **kwargs):
            return self._observe(send, method, url, *args, **kwargs)

        return request

    def _observe(self, send, method, url, *args, **kwargs):
        start = time.monotonic()
        code = "error"
        response_size = 0
        body = kwargs.get("body")
        if self.verbose:
            query = kwargs.get("query_params") or ""
            logger.info(f"[{self.location}] --> {method} {url} {query}")
        try:
            response = send(method, url, *args, **kwargs)
            code = str(response.status)
            response_size = _response_size(response)
            return response
        except ApiException as e:
            code = str(e.status)
            response_size = _body_size(e.body)
            raise
        finally:
            elapsed = time.monotonic() - start
            CLIENT_REQUESTS.labels(method=method, location=self.location).inc()
            CLIENT_REQUEST_BYTES.labels(
                method=method, code=code, location=self.location
            ).observe(_body_size(body))
            CLIENT_RESPONSE_BYTES.labels(
                method=method, code=code, location=self.location
            ).observe(response_size)
            CLIENT_LATENCY.labels(
                method=method, code=code, location=self.location
            ).observe(elapsed)
            if self.verbose:
                logger.info(
                    f"[{self.location}] <-- {code} {method} {url} ({elapsed:.3f}s)"
                )


class ResourceClient:
    """
    A watchable, gettable, creatable, updatable resource of one kind.

    Thin wrapper around ``CustomObjectsApi`` that hides the difference
    between namespaced and cluster-scoped resources. All calls block.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        location: str,
        group: str,
        version: str,
        plural: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        request_timeout: Optional[int] = None,
    ):
        self.api = client.CustomObjectsApi(api_client)
        self.location = location
        self.group = group
        self.version = version
        self.plural = plural
        self.namespace = namespace
        self.label_selector = label_selector
        self.request_timeout = request_timeout

    def __repr__(self) -> str:
        scope = f"{self.namespace}/" if self.namespace else ""
        return f"<ResourceClient {self.location}:{scope}{self.plural}.{self.group}>"

    def _scope(self) -> Dict[str, str]:
        scope = {"group": self.group, "version": self.version, "plural": self.plural}
        if self.namespace:
            scope["namespace"] = self.namespace
        return scope

    def _options(self) -> Dict[str, Any]:
        if self.request_timeout:
            return {"_request_timeout": self.request_timeout}
        return {}

    def _list_fn(self):
        if self.namespace:
            return self.api.list_namespaced_custom_object
        return self.api.list_cluster_custom_object

    def _selector(self) -> Dict[str, str]:
        if self.label_selector:
            return {"label_selector": self.label_selector}
        return {}

    def list(self) -> Tuple[List[Dict[str, Any]], str]:
        """List all objects; returns ``(items, resourceVersion)``."""
        result = self._list_fn()(
            **self._scope(), **self._selector(), **self._options()
        )
        items = result.get("items") or []
        resource_version = (result.get("metadata") or {}).get("resourceVersion", "")
        return items, resource_version

    def watch(
        self, watcher, resource_version: str, timeout_seconds: int
    ) -> Iterator[Dict[str, Any]]:
        """Stream watch events starting after ``resource_version``."""
        return watcher.stream(
            self._list_fn(),
            **self._scope(),
            **self._selector(),
            resource_version=resource_version,
            timeout_seconds=timeout_seconds,
            _request_timeout=timeout_seconds + 5,
        )

    def get(self, name: str) -> Dict[str, Any]:
        if self.namespace:
            fn = self.api.get_namespaced_custom_object
        else:
            fn = self.api.get_cluster_custom_object
        return fn(**self._scope(), name=name, **self._options())

    def create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if self.namespace:
            fn = self.api.create_namespaced_custom_object
        else:
            fn = self.api.create_cluster_custom_object
        return fn(**self._scope(), body=body, **self._options())

    def replace(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if self.namespace:
            fn = self.api.replace_namespaced_custom_object
        else:
            fn = self.api.replace_cluster_custom_object
        name = body["metadata"]["name"]
        return fn(**self._scope(), name=name, body=body, **self._options())

    def replace_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if self.namespace:
            fn = self.api.replace_namespaced_custom_object_status
        else:
            fn = self.api.replace_cluster_custom_object_status
        name = body["metadata"]["name"]
        return fn(**self._scope(), name=name, body=body, **self._options())

    def delete(self, name: str) -> None:
        if self.namespace:
            fn = self.api.delete_namespaced_custom_object
        else:
            fn = self.api.delete_cluster_custom_object
        fn(**self._scope(), name=name, **self._options())


class ClusterClient:
    """Access to one cluster, local or remote."""

    def __init__(
        self,
        api_client: client.ApiClient,
        location: str,
        request_timeout: Optional[int] = None,
    ):
        self.api_client = api_client
        self.location = location
        self.request_timeout = request_timeout

    def resource(
        self,
        descriptor,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> ResourceClient:
        """Return a client for the resource a KindDescriptor names."""
        return ResourceClient(
            self.api_client,
            self.location,
            group=descriptor.group,
            version=descriptor.version,
            plural=descriptor.plural,
            namespace=namespace if descriptor.namespaced else None,
            label_selector=label_selector,
            request_timeout=self.request_timeout,
        )

    def crds(self) -> ResourceClient:
        """Return a client for CustomResourceDefinitions."""
        return ResourceClient(
            self.api_client,
            self.location,
            group="apiextensions.k8s.io",
            version="v1",
            plural="customresourcedefinitions",
            request_timeout=self.request_timeout,
        )

    def ping(self) -> None:
        """
        Check that the API server answers.

        Raises:
            Exception: Whatever the transport raises when unreachable
        """
        client.VersionApi(self.api_client).get_code(_request_timeout=PING_TIMEOUT)

    def close(self) -> None:
        self.api_client.close()


def load_local_client(verbose: bool = False) -> ClusterClient:
    """
    Build the client for the local cluster.

    Uses the in-cluster service account, falling back to the kubeconfig
    when running outside a cluster.

    Raises:
        CredentialsError: If neither source yields a configuration
    """
    configuration = client.Configuration()
    try:
        kube_config.load_incluster_config(client_configuration=configuration)
    except ConfigException:
        logger.info("Not running in a cluster, loading kubeconfig")
        try:
            kube_config.load_kube_config(client_configuration=configuration)
        except (ConfigException, OSError) as e:
            raise CredentialsError(f"Unable to load local credentials: {e}") from e

    api_client = InstrumentedApiClient(configuration, LOCATION_LOCAL, verbose)
    return ClusterClient(api_client, LOCATION_LOCAL)


def load_remote_client(
    server: str, request_timeout: int, verbose: bool = False
) -> ClusterClient:
    """
    Build the client for the remote cluster.

    Requests carry a bearer token from the application default
    credentials, refreshed whenever it has expired. ``request_timeout``
    bounds every non-watch request.

    Raises:
        CredentialsError: If no default credentials are available
    """
    try:
        credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
    except google.auth.exceptions.DefaultCredentialsError as e:
        raise CredentialsError(f"Unable to load remote credentials: {e}") from e

    def refresh_token(configuration: client.Configuration) -> None:
        if not credentials.valid:
            credentials.refresh(Request())
        configuration.api_key["authorization"] = credentials.token

    configuration = client.Configuration()
    configuration.host = f"https://{server}"
    configuration.api_key = {"authorization": ""}
    configuration.api_key_prefix = {"authorization": "Bearer"}
    configuration.refresh_api_key_hook = refresh_token

    api_client = InstrumentedApiClient(configuration, LOCATION_REMOTE, verbose)
    return ClusterClient(api_client, LOCATION_REMOTE, request_timeout=request_timeout)
