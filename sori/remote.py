"""Copying a tagged artifact from a local OCI layout to a remote registry."""

from __future__ import annotations

import base64
import json
import re
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter

from .ocistore import (
    MEDIA_TYPE_IMAGE_INDEX,
    MEDIA_TYPE_IMAGE_MANIFEST,
    Descriptor,
    NotFoundError,
    OCILayoutStore,
)

_DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
_INDEX_TYPES = (MEDIA_TYPE_IMAGE_INDEX, _DOCKER_MANIFEST_LIST)
_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REPOSITORY_RE = re.compile(rf"^{_COMPONENT}(?:/{_COMPONENT})*$")
_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')
_TIMEOUT = 60
_RETRIES = 5


class RegistryError(Exception):
    """Raised when pushing to a remote registry fails."""


def _parse_reference(reference: str) -> tuple[str, str]:
    registry, sep, rest = reference.partition("/")
    if not sep or not registry or not rest:
        raise RegistryError(f"invalid reference {reference!r}: missing repository")
    if "@" in rest:
        rest = rest.split("@", 1)[0]
    else:
        head, slash, last = rest.rpartition("/")
        if ":" in last:
            rest = head + slash + last.split(":", 1)[0]
    if not _REPOSITORY_RE.match(rest):
        raise RegistryError(f"invalid reference {reference!r}: invalid repository {rest!r}")
    return registry, rest


def _unexpected(resp: requests.Response, action: str) -> RegistryError:
    return RegistryError(f"{action}: unexpected status {resp.status_code}")


class _RegistryClient:
    def __init__(
        self, registry: str, repository: str, user: str, password: str, plain_http: bool
    ) -> None:
        scheme = "http" if plain_http else "https"
        self.base = f"{scheme}://{registry}/v2/{repository}"
        self.scope = f"repository:{repository}:pull,push"
        self.user = user
        self.password = password
        self.session = requests.Session()
        adapter = HTTPAdapter(max_retries=_RETRIES)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        self.authorization: str | None = None

    def _send(self, method: str, url: str, headers: dict[str, str], **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, headers=headers, timeout=_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            raise RegistryError(f"{method} {url}: {exc}") from exc

    def request(self, method: str, url: str, headers: dict[str, str] | None = None, **kwargs):
        merged = dict(headers or {})
        if self.authorization:
            merged["Authorization"] = self.authorization
        resp = self._send(method, url, merged, **kwargs)
        if resp.status_code != 401:
            return resp
        self.authorization = self._authorize(resp.headers.get("WWW-Authenticate", ""))
        merged["Authorization"] = self.authorization
        return self._send(method, url, merged, **kwargs)

    def _authorize(self, challenge: str) -> str:
        scheme, _, param_text = challenge.strip().partition(" ")
        params = dict(_CHALLENGE_PARAM_RE.findall(param_text))
        has_credentials = bool(self.user or self.password)
        if scheme.lower() == "basic":
            if not has_credentials:
                raise RegistryError("registry requires credentials")
            encoded = base64.b64encode(f"{self.user}:{self.password}".encode()).decode()
            return f"Basic {encoded}"
        if scheme.lower() == "bearer":
            realm = params.get("realm")
            if not realm:
                raise RegistryError("bearer challenge without realm")
            query = {"scope": params.get("scope") or self.scope}
            if params.get("service"):
                query["service"] = params["service"]
            auth = (self.user, self.password) if has_credentials else None
            try:
                resp = self.session.get(realm, params=query, auth=auth, timeout=_TIMEOUT)
            except requests.RequestException as exc:
                raise RegistryError(f"token request failed: {exc}") from exc
            if resp.status_code != 200:
                raise _unexpected(resp, "token request")
            try:
                body = resp.json()
            except ValueError as exc:
                raise RegistryError(f"token response is not JSON: {exc}") from exc
            issued = body.get("token") or body.get("access_token") if isinstance(body, dict) else None
            if not issued:
                raise RegistryError("token response carries no token")
            return f"Bearer {issued}"
        raise RegistryError(f"unsupported authentication challenge: {challenge!r}")

    def blob_exists(self, digest: str) -> bool:
        resp = self.request("HEAD", f"{self.base}/blobs/{digest}")
        if resp.status_code == 200:
            return True
        if resp.status_code == 404:
            return False
        raise _unexpected(resp, f"check blob {digest}")

    def upload_blob(self, desc: Descriptor, content: bytes) -> None:
        resp = self.request("POST", f"{self.base}/blobs/uploads/")
        if resp.status_code != 202:
            raise _unexpected(resp, f"start upload of {desc.digest}")
        location = resp.headers.get("Location")
        if not location:
            raise RegistryError(f"start upload of {desc.digest}: missing Location header")
        resp = self.request(
            "PUT",
            urljoin(self.base, location),
            params={"digest": desc.digest},
            data=content,
            headers={"Content-Type": "application/octet-stream"},
        )
        if resp.status_code != 201:
            raise _unexpected(resp, f"upload blob {desc.digest}")

    def put_manifest(self, reference: str, media_type: str, content: bytes) -> None:
        resp = self.request(
            "PUT",
            f"{self.base}/manifests/{reference}",
            data=content,
            headers={"Content-Type": media_type},
        )
        if resp.status_code not in (200, 201):
            raise _unexpected(resp, f"push manifest {reference}")


def _copy(store: OCILayoutStore, client: _RegistryClient, desc: Descriptor, reference: str) -> None:
    with store.fetch(desc) as handle:
        content = handle.read()
    document = json.loads(content)
    media_type = desc.media_type or document.get("mediaType") or MEDIA_TYPE_IMAGE_MANIFEST
    if media_type in _INDEX_TYPES:
        for child in document.get("manifests") or []:
            child_desc = Descriptor.from_dict(child)
            _copy(store, client, child_desc, child_desc.digest)
    else:
        blobs = [Descriptor.from_dict(layer) for layer in document.get("layers") or []]
        if document.get("config"):
            blobs.insert(0, Descriptor.from_dict(document["config"]))
        for blob in blobs:
            if client.blob_exists(blob.digest):
                continue
            with store.fetch(blob) as handle:
                client.upload_blob(blob, handle.read())
    client.put_manifest(reference, media_type, content)


def push_local_to_remote(
    local_repo_path: str,
    tag: str,
    remote_repo: str,
    user: str,
    password: str,
    plain_http: bool = False,
) -> str:
    """Copy local_repo_path:tag to remote_repo:tag and return the manifest digest.

    plain_http selects http instead of https. Credentials are sent when the
    registry asks for Basic or Bearer authentication.
    """
    try:
        store = OCILayoutStore(local_repo_path)
    except (OSError, ValueError) as exc:
        raise RegistryError(f"failed to init local OCI store: {exc}") from exc
    try:
        registry, repository = _parse_reference(remote_repo)
    except RegistryError as exc:
        raise RegistryError(f"failed to connect to remote repository: {exc}") from exc

    client = _RegistryClient(registry, repository, user, password, plain_http)
    try:
        desc = store.resolve(tag)
        _copy(store, client, desc, tag)
    except (RegistryError, NotFoundError, OSError, ValueError) as exc:
        raise RegistryError(f"failed to push to remote registry: {exc}") from exc

    print("Pushed to remote:", desc.digest)
    return desc.digest