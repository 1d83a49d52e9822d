import base64
from urllib.parse import parse_qs, urlparse

import pytest
import responses

from sori.ocistore import (
    MEDIA_TYPE_IMAGE_CONFIG,
    MEDIA_TYPE_IMAGE_LAYER_GZIP,
    MEDIA_TYPE_IMAGE_MANIFEST,
    Descriptor,
    OCILayoutStore,
    digest_from_bytes,
)
from sori.remote import RegistryError, push_local_to_remote

BASE = "https://registry.example.com/v2/project/repo"
REMOTE = "registry.example.com/project/repo"
CONFIG = b'{"referenceName": "GRCh38"}'
LAYER = b"layer-bytes"


@pytest.fixture
def local(tmp_path):
    store = OCILayoutStore(tmp_path / "local")
    config = Descriptor(MEDIA_TYPE_IMAGE_CONFIG, digest_from_bytes(CONFIG), len(CONFIG))
    layer = Descriptor(MEDIA_TYPE_IMAGE_LAYER_GZIP, digest_from_bytes(LAYER), len(LAYER))
    store.push(config, CONFIG)
    store.push(layer, LAYER)
    manifest = store.pack_manifest(config, [layer], None)
    store.tag(manifest, "v1")
    with store.fetch(manifest) as handle:
        manifest_bytes = handle.read()
    return str(tmp_path / "local"), manifest, manifest_bytes


def _push(local_path, remote=REMOTE, plain_http=False):
    password = "password"
    return push_local_to_remote(local_path, "v1", remote, "user", password=password, plain_http=plain_http)


def test_push_uploads_missing_blobs(local):
    local_path, manifest, manifest_bytes = local
    with responses.RequestsMock() as rsps:
        rsps.add(responses.HEAD, f"{BASE}/blobs/{digest_from_bytes(CONFIG)}", status=404)
        rsps.add(responses.HEAD, f"{BASE}/blobs/{digest_from_bytes(LAYER)}", status=404)
        rsps.add(
            responses.POST,
            f"{BASE}/blobs/uploads/",
            status=202,
            headers={"Location": "/v2/project/repo/blobs/uploads/session"},
        )
        rsps.add(responses.PUT, f"{BASE}/blobs/uploads/session", status=201)
        rsps.add(responses.PUT, f"{BASE}/manifests/v1", status=201)
        digest = _push(local_path)
        puts = [call.request for call in rsps.calls if call.request.method == "PUT"]

    assert digest == manifest.digest
    blob_puts = puts[:-1]
    assert {req.body for req in blob_puts} == {CONFIG, LAYER}
    assert {parse_qs(urlparse(req.url).query)["digest"][0] for req in blob_puts} == {
        digest_from_bytes(CONFIG),
        digest_from_bytes(LAYER),
    }
    assert puts[-1].body == manifest_bytes
    assert puts[-1].headers["Content-Type"] == MEDIA_TYPE_IMAGE_MANIFEST


def test_push_skips_existing_blobs(local):
    local_path, manifest, manifest_bytes = local
    with responses.RequestsMock() as rsps:
        rsps.add(responses.HEAD, f"{BASE}/blobs/{digest_from_bytes(CONFIG)}", status=200)
        rsps.add(responses.HEAD, f"{BASE}/blobs/{digest_from_bytes(LAYER)}", status=200)
        rsps.add(responses.PUT, f"{BASE}/manifests/v1", status=201)
        digest = _push(local_path)
        methods = [call.request.method for call in rsps.calls]

    assert digest == manifest.digest
    assert methods.count("POST") == 0
    assert methods.count("PUT") == 1


def test_push_bearer_challenge(local):
    local_path, manifest, _ = local
    challenge = 'Bearer realm="https://auth.example.com/token",service="registry.example.com"'
    with responses.RequestsMock() as rsps:
        config_url = f"{BASE}/blobs/{digest_from_bytes(CONFIG)}"
        rsps.add(responses.HEAD, config_url, status=401, headers={"WWW-Authenticate": challenge})
        rsps.add(responses.HEAD, config_url, status=200)
        rsps.add(responses.GET, "https://auth.example.com/token", json={"token": "token"})
        rsps.add(responses.HEAD, f"{BASE}/blobs/{digest_from_bytes(LAYER)}", status=200)
        rsps.add(responses.PUT, f"{BASE}/manifests/v1", status=201)
        digest = _push(local_path)
        token_request = next(c.request for c in rsps.calls if "auth.example.com" in c.request.url)
        manifest_request = rsps.calls[-1].request

    assert digest == manifest.digest
    query = parse_qs(urlparse(token_request.url).query)
    assert query["scope"] == ["repository:project/repo:pull,push"]
    assert query["service"] == ["registry.example.com"]
    assert token_request.headers["Authorization"].startswith("Basic ")
    assert manifest_request.headers["Authorization"] == "Bearer token"


def test_push_basic_challenge(local):
    local_path, _, _ = local
    with responses.RequestsMock() as rsps:
        config_url = f"{BASE}/blobs/{digest_from_bytes(CONFIG)}"
        rsps.add(
            responses.HEAD,
            config_url,
            status=401,
            headers={"WWW-Authenticate": 'Basic realm="registry"'},
        )
        rsps.add(responses.HEAD, config_url, status=200)
        rsps.add(responses.HEAD, f"{BASE}/blobs/{digest_from_bytes(LAYER)}", status=200)
        rsps.add(responses.PUT, f"{BASE}/manifests/v1", status=201)
        _push(local_path)
        header = rsps.calls[-1].request.headers["Authorization"]

    scheme, encoded = header.split(" ", 1)
    assert scheme == "Basic"
    assert base64.b64decode(encoded) == b"user:password"


def test_push_plain_http(local):
    local_path, manifest, _ = local
    http_base = "http://registry.example.com/v2/project/repo"
    with responses.RequestsMock() as rsps:
        rsps.add(responses.HEAD, f"{http_base}/blobs/{digest_from_bytes(CONFIG)}", status=200)
        rsps.add(responses.HEAD, f"{http_base}/blobs/{digest_from_bytes(LAYER)}", status=200)
        rsps.add(responses.PUT, f"{http_base}/manifests/v1", status=201)
        digest = _push(local_path, plain_http=True)
        urls = [call.request.url for call in rsps.calls]

    assert digest == manifest.digest
    assert all(url.startswith("http://") for url in urls)


def test_push_manifest_failure(local):
    local_path, _, _ = local
    with responses.RequestsMock() as rsps:
        rsps.add(responses.HEAD, f"{BASE}/blobs/{digest_from_bytes(CONFIG)}", status=200)
        rsps.add(responses.HEAD, f"{BASE}/blobs/{digest_from_bytes(LAYER)}", status=200)
        rsps.add(responses.PUT, f"{BASE}/manifests/v1", status=500)
        with pytest.raises(RegistryError, match="500"):
            _push(local_path)


def test_push_invalid_reference(local):
    local_path, _, _ = local
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        with pytest.raises(RegistryError, match="failed to connect"):
            _push(local_path, remote="noslash")
        assert len(rsps.calls) == 0


def test_push_unknown_tag(tmp_path):
    OCILayoutStore(tmp_path / "empty")
    password = "password"
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        with pytest.raises(RegistryError, match="failed to push"):
            push_local_to_remote(str(tmp_path / "empty"), "v1", REMOTE, "user", password=password)
        assert len(rsps.calls) == 0