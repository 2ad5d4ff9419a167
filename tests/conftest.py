import pathlib

import pytest
import yaml

from fakes import API_TOKEN, NAME, NAMESPACE, PAAS_TOKEN, FakeCluster, MockDynatraceClient
from oneagent_operator import constants as C
from oneagent_operator.dtclient import static_client
from oneagent_operator.reconciler import Reconciler

EXAMPLE_CR = pathlib.Path(__file__).parent.parent / "deploy" / "oneagent.yaml"


@pytest.fixture
def example_spec():
    """Spec of the example OneAgent shipped in deploy/."""
    with open(EXAMPLE_CR) as f:
        return yaml.safe_load(f)["spec"]


@pytest.fixture
def cluster():
    cluster = FakeCluster()
    cluster.add_secret(NAME, NAMESPACE, {C.PAAS_TOKEN_KEY: PAAS_TOKEN, C.API_TOKEN_KEY: API_TOKEN})
    return cluster


@pytest.fixture
def dtc():
    return MockDynatraceClient(
        latest_version="42",
        scopes={
            PAAS_TOKEN: [C.TOKEN_SCOPE_INSTALLER_DOWNLOAD],
            API_TOKEN: [C.TOKEN_SCOPE_DATA_EXPORT],
        },
    )


@pytest.fixture
def reconciler(cluster, dtc):
    return Reconciler(cluster.clients, client_factory=static_client(dtc))
