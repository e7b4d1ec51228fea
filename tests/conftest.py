"""Pytest configuration and fixtures."""

import pytest

from fakes import FakeApiServer, FakeCluster, InformerRecorder, make_descriptor
from metrics import LOCATION_LOCAL, LOCATION_REMOTE
from policy import (
    ANNOTATION_FILTER_BY_ROBOT_NAME,
    ANNOTATION_SPEC_SOURCE,
    ANNOTATION_STATUS_SUBTREE,
)


@pytest.fixture
def local_cluster():
    """In-memory local cluster."""
    return FakeCluster(LOCATION_LOCAL)


@pytest.fixture
def remote_cluster():
    """In-memory remote cluster."""
    return FakeCluster(LOCATION_REMOTE)


@pytest.fixture
def api_server():
    """HTTP API server on the loopback interface."""
    server = FakeApiServer(items=[{"metadata": {"name": "w1", "namespace": "ns"}}])
    server.start()
    yield server
    server.stop()


@pytest.fixture
def informers():
    """Informer factory recording the informers it builds."""
    return InformerRecorder()


@pytest.fixture
def sample_crd():
    """A cloud-owned CRD with a status subresource."""
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {
            "name": "widgets.example.com",
            "resourceVersion": "17",
            "annotations": {
                ANNOTATION_SPEC_SOURCE: "cloud",
                ANNOTATION_STATUS_SUBTREE: "progress",
            },
        },
        "spec": {
            "group": "example.com",
            "scope": "Namespaced",
            "names": {"plural": "widgets", "kind": "Widget"},
            "versions": [
                {"name": "v1alpha1", "served": True, "storage": False},
                {
                    "name": "v1",
                    "served": True,
                    "storage": True,
                    "subresources": {"status": {}},
                },
            ],
        },
    }


@pytest.fixture
def cloud_descriptor():
    return make_descriptor(**{ANNOTATION_SPEC_SOURCE: "cloud"})


@pytest.fixture
def robot_descriptor():
    return make_descriptor(
        **{
            ANNOTATION_SPEC_SOURCE: "robot",
            ANNOTATION_FILTER_BY_ROBOT_NAME: "true",
        }
    )
