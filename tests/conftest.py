import json
from urllib.parse import urlsplit

import pytest
from requests.structures import CaseInsensitiveDict

from fhir_lifecycle.client import ResourceClient, SystemClient
from fhir_lifecycle.sandbox import create_app

BASE_URI = "http://sandbox.test"
BASE_PATH = "/fhir"


class MockResponse:
    """Just enough of requests.Response for the clients."""
    def __init__(self, json_data=None, status_code=200, text=None, content_type="application/fhir+json"):
        self.status_code = status_code
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        self.text = text
        self.headers = CaseInsensitiveDict({"Content-Type": content_type} if content_type else {})

    def json(self):
        return json.loads(self.text)


@pytest.fixture
def mock_response():
    return MockResponse


@pytest.fixture
def app():
    flask_app = create_app(BASE_PATH)
    flask_app.config.update({
        "TESTING": True,
    })
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    return app.extensions["fhir_store"]


@pytest.fixture
def sandbox_requests(mocker, client):
    """
    Patch requests.request so every call made by the FHIR clients is served by
    the sandbox app's test client instead of the network.
    """
    def dispatch(method, url, params=None, json=None, data=None, headers=None, timeout=None):
        resp = client.open(
            urlsplit(url).path,
            method=method,
            query_string=params,
            json=json,
            data=data,
            headers=headers or {},
        )
        return MockResponse(
            status_code=resp.status_code,
            text=resp.get_data(as_text=True),
            content_type=resp.headers.get("Content-Type", ""),
        )
    return mocker.patch("requests.request", side_effect=dispatch)


@pytest.fixture
def patients(sandbox_requests):
    return ResourceClient(BASE_URI, BASE_PATH, "Patient")


@pytest.fixture
def conditions(sandbox_requests):
    return ResourceClient(BASE_URI, BASE_PATH, "Condition")


@pytest.fixture
def system(sandbox_requests):
    return SystemClient(BASE_URI, BASE_PATH)
