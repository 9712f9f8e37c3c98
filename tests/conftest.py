import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import httpx
import pytest
import stripe
from dropbox.exceptions import ApiError
from dropbox.files import CreateFolderError, WriteConflictError, WriteError
from dropbox.sharing import CreateSharedLinkWithSettingsError
from fastapi.testclient import TestClient

from api.dependencies import build_container
from api.server import create_app
from settings import Settings

VSAI_BASE = "https://api.vsai.test/v1"
RESULT_URL = "https://cdn.vsai.test/results/render-1.jpg"
WEBHOOK_SECRET = "whsec_test_secret"


def shared_link_exists_error():
    return ApiError(
        "req-link",
        CreateSharedLinkWithSettingsError("shared_link_already_exists", None),
        None,
        None,
    )


def folder_conflict_error():
    return ApiError(
        "req-folder",
        CreateFolderError.path(WriteError.conflict(WriteConflictError.folder)),
        None,
        None,
    )


class FakeDropbox:
    """Stand-in for dropbox.Dropbox: records calls, keeps files and links in memory."""

    def __init__(self):
        self.calls = []
        self.files = {}
        self.links = {}
        self.folders = set()
        self.failures = {}
        self._link_counter = 0

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        failure = self.failures.get(name)
        if failure is not None:
            raise failure() if callable(failure) else failure

    def called(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]

    def files_upload(self, f, path, mode=None, autorename=False, mute=False):
        self._record("files_upload", path=path, mode=mode, autorename=autorename, mute=mute, data=f)
        self.files[path] = f
        return SimpleNamespace(path_display=path)

    def files_create_folder_v2(self, path, autorename=False):
        self._record("files_create_folder_v2", path=path)
        if path in self.folders:
            raise folder_conflict_error()
        self.folders.add(path)
        return SimpleNamespace(metadata=SimpleNamespace(path_display=path))

    def sharing_create_shared_link_with_settings(self, path, settings=None):
        self._record("sharing_create_shared_link_with_settings", path=path, settings=settings)
        if path in self.links:
            raise shared_link_exists_error()
        self._link_counter += 1
        name = path.rsplit("/", 1)[-1]
        url = f"https://www.dropbox.com/scl/fi/{self._link_counter}/{name}?rlkey=abc&dl=0"
        self.links[path] = url
        return SimpleNamespace(url=url)

    def sharing_list_shared_links(self, path=None, direct_only=None):
        self._record("sharing_list_shared_links", path=path, direct_only=direct_only)
        links = [SimpleNamespace(url=self.links[path])] if path in self.links else []
        return SimpleNamespace(links=links)

    def files_get_temporary_link(self, path):
        self._record("files_get_temporary_link", path=path)
        return SimpleNamespace(link=f"https://dl.dropboxusercontent.com/apitl/1{path}")

    def sharing_add_file_member(self, file, members, custom_message=None, access_level=None):
        self._record("sharing_add_file_member", file=file, members=members, custom_message=custom_message)
        return []


class FakeRenderProvider:
    """httpx MockTransport handler playing Virtual Staging AI and its CDN."""

    def __init__(self):
        self.requests = []
        self.create_response = (200, {"result_image_url": RESULT_URL, "render_id": "render-1"})
        self.variation_response = (200, {"result_image_url": RESULT_URL, "render_id": "variation-1"})
        self.asset_status = 200
        self.asset_bytes = b"staged-image-bytes"

    def api_calls(self, path):
        return [r for r in self.requests if r.url.path.endswith(path) and r.url.host == "api.vsai.test"]

    def json_bodies(self, path):
        return [json.loads(r.content) for r in self.api_calls(path)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.host == "cdn.vsai.test":
            return httpx.Response(self.asset_status, content=self.asset_bytes)

        path = request.url.path
        if path.endswith("/render/create"):
            status, body = self.create_response
        elif path.endswith("/render/create-variation"):
            status, body = self.variation_response
        elif path.endswith("/ping"):
            status, body = 200, {"message": "pong"}
        elif path.endswith("/render"):
            status, body = 200, {"render_id": request.url.params.get("render_id"), "status": "done"}
        else:
            status, body = 404, {"error": "not found"}
        return httpx.Response(status, json=body)


class FakeStripe:
    """Only checkout.Session.create is faked; webhook signatures use the real verifier."""

    WebhookSignature = stripe.WebhookSignature

    def __init__(self):
        self.sessions = []
        self.error = None
        self.checkout = SimpleNamespace(Session=SimpleNamespace(create=self._create_session))

    def _create_session(self, **params):
        if self.error is not None:
            raise self.error
        self.sessions.append(params)
        return SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.test/pay/cs_test_1")


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def checkout_completed_event(metadata, customer_email=None, session_id="cs_test_1"):
    session = {"id": session_id, "object": "checkout.session", "metadata": metadata}
    if customer_email:
        session["customer_details"] = {"email": customer_email}
    return {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": session}}


@pytest.fixture
def settings():
    return Settings(
        vsai_api_key="vsai-key",
        vsai_base_url=VSAI_BASE,
        dropbox_access_token="dropbox-token",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        site_url="https://site.test",
    )


@pytest.fixture
def fake_dropbox():
    return FakeDropbox()


@pytest.fixture
def render_provider():
    return FakeRenderProvider()


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def container(settings, fake_dropbox, render_provider, fake_stripe):
    return build_container(
        settings,
        dropbox_client=fake_dropbox,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(render_provider)),
        stripe_client=fake_stripe,
    )


@pytest.fixture
def client(container):
    return TestClient(create_app(container))
