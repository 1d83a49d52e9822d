import json
import os

import pytest

from sori.config import (
    Config,
    ConfigError,
    LocalStore,
    init_config,
    load_config,
    oci_store_path,
)


def _write(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture
def store_dir(tmp_path):
    return tmp_path / "store" / "oci"


@pytest.fixture
def config_file(tmp_path, store_dir):
    data = {
        "local": {"type": "oci", "path": str(store_dir)},
        "remotes": [
            {
                "name": "harbor",
                "type": "registry",
                "registry": "harbor.local",
                "repository": "project/repo",
                "tls": {"insecure": True, "ca_file": "/etc/ca.pem"},
                "auth": {"username": "user", "password": "password", "token": ""},
            }
        ],
    }
    return _write(tmp_path / "sori-oci.json", data)


def test_load_config_then_ensure_dir(config_file, store_dir):
    conf = load_config(config_file)
    assert conf.local.type == "oci"
    assert conf.local.path == str(store_dir)
    conf.ensure_dir()
    assert store_dir.is_dir()


def test_init_config_sets_store_path(config_file, store_dir):
    conf = init_config(config_file)
    assert oci_store_path() == str(store_dir)
    conf.ensure_dir()
    assert store_dir.is_dir()


def test_load_config_relative_path(tmp_path, config_file, monkeypatch):
    monkeypatch.chdir(tmp_path)
    conf = load_config("sori-oci.json")
    assert conf.remotes[0].name == "harbor"


def test_remote_fields_are_read(config_file):
    remote = load_config(config_file).remotes[0]
    assert remote.registry == "harbor.local"
    assert remote.repository == "project/repo"
    assert remote.tls.insecure is True
    assert remote.tls.ca_file == "/etc/ca.pem"
    assert remote.auth.username == "user"


def test_remotes_default_to_empty(tmp_path):
    path = _write(tmp_path / "c.json", {"local": {"type": "oci", "path": "/x"}})
    assert load_config(path).remotes == []


def test_ensure_dir_existing_directory(tmp_path):
    conf = Config(local=LocalStore(type="oci", path=str(tmp_path)))
    conf.ensure_dir()
    assert tmp_path.is_dir()


def test_ensure_dir_on_regular_file(tmp_path):
    target = tmp_path / "file"
    target.write_text("x")
    conf = Config(local=LocalStore(type="oci", path=str(target)))
    with pytest.raises(ConfigError, match="not a directory"):
        conf.ensure_dir()


def test_ensure_dir_empty_path():
    with pytest.raises(ConfigError, match="local.path is empty"):
        Config().ensure_dir()


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="stat config"):
        load_config(tmp_path / "absent.json")


def test_symlink_refused(config_file, tmp_path):
    link = tmp_path / "link.json"
    os.symlink(config_file, link)
    with pytest.raises(ConfigError, match="not a regular file"):
        load_config(link)


def test_directory_refused(tmp_path):
    with pytest.raises(ConfigError, match="not a regular file"):
        load_config(tmp_path)


def test_bad_json(tmp_path):
    path = tmp_path / "c.json"
    path.write_text("{not json")
    with pytest.raises(ConfigError, match="decode json"):
        load_config(path)


def test_empty_local_path(tmp_path):
    path = _write(tmp_path / "c.json", {"local": {"type": "oci", "path": ""}})
    with pytest.raises(ConfigError, match="local.path is empty"):
        load_config(path)


def test_wrong_local_type(tmp_path):
    path = _write(tmp_path / "c.json", {"local": {"type": "dir", "path": "/x"}})
    with pytest.raises(ConfigError, match="local.type must be 'oci', but got 'dir'"):
        load_config(path)


def test_remote_missing_fields(tmp_path):
    data = {
        "local": {"type": "oci", "path": "/x"},
        "remotes": [
            {"name": "a", "registry": "r", "repository": "p"},
            {"name": "b", "registry": "", "repository": "p"},
        ],
    }
    path = _write(tmp_path / "c.json", data)
    with pytest.raises(ConfigError, match=r"remotes\[1\] missing required fields"):
        load_config(path)