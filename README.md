# sori

`sori` turns a directory of data (a reference genome, a sequencing run, any
tree of files) into an OCI artifact. The artifact is stored in a local OCI image
layout directory, recorded in a versioned volume collection, and can be copied
to a remote registry.

It is a library; it has no command-line program.

## Modules

- `sori.config`: the JSON configuration (`Config`, `LocalStore`, `RemoteStore`,
  `TLSConfig`, `AuthConfig`, `ConfigError`), `load_config`, `init_config` and
  `oci_store_path`.
- `sori.models`: `Partition`, `VolumeIndex` and `VolumeEntry`, each with
  `to_dict` / `from_dict`; `VolumeIndex.save_to_file`.
- `sori.archive`: deterministic `tar_gz_dir` and `untar_gz_dir`.
- `sori.ocistore`: `OCILayoutStore`, `Descriptor`, `digest_from_bytes`,
  `NotFoundError`.
- `sori.volume`: `validate_volume_dir`, `generate_volume_index`,
  `publish_volume`.
- `sori.collection`: `VolumeCollection`, `CollectionManager`,
  `new_volume_collection`, `load_or_new_collection`.
- `sori.fetch`: `fetch_vol_seq`, `fetch_vol_parallel`.
- `sori.remote`: `push_local_to_remote`, `RegistryError`.

Messages are logged through the standard `logging` module under the logger
named `sori`.

## Configuration

```json
{
  "local": {"type": "oci", "path": "/var/lib/sori/oci"},
  "remotes": [
    {
      "name": "lab",
      "type": "registry",
      "registry": "harbor.example.com",
      "repository": "project/volumes",
      "tls": {"insecure": false, "ca_file": ""},
      "auth": {"username": "user", "password": "password", "token": ""}
    }
  ]
}
```

`load_config(path)` reads such a file and raises `ConfigError` when:

- the path is not a regular file (a symbolic link is refused),
- the JSON cannot be decoded or a field has the wrong type,
- `local.path` is empty,
- `local.type` is not `"oci"`,
- a remote lacks `name`, `registry` or `repository`.

`init_config(path)` does the same and also makes `local.path` the active OCI
store, returned from then on by `oci_store_path()` (before that it is
`/var/lib/sori/oci`). `Config.ensure_dir()` creates the store directory if it is
missing and raises `ConfigError` if the path exists but is not a directory.

```python
from sori.config import init_config, oci_store_path

cfg = init_config("sori-oci.json")
cfg.ensure_dir()
print(oci_store_path())
```

The `remotes`, `tls` and `auth` sections are parsed and validated only; nothing
in the package reads them back. `push_local_to_remote` takes its registry,
credentials and HTTP/HTTPS choice as arguments, and TLS settings such as
`insecure` and `ca_file` are not applied anywhere.

## Publishing a volume

`validate_volume_dir(vol_dir)` requires an existing directory with at least one
entry whose name does not start with `.` (it raises `NotADirectoryError` or
`ValueError` otherwise). It returns the raw bytes of `configblob.json`, creating
that file as `{}` when it is missing; invalid JSON in it raises `ValueError`.

`generate_volume_index(root_path, display_name)` lists every sub-directory as a
`Partition`, in name order, with a path of the form `<root name>/<relative
path>`. A directory holding a file named `no_deep_scan` is listed, but its
subtree is not.

`publish_volume(index, vol_path, vol_name, config_blob, store_root=None)` packs
each partition as a gzip tarball layer (or the whole directory as one layer
when the index has no partitions), pushes the config blob and the layers that
are not already stored, writes an image manifest and tags it as `vol_name`. The
index is updated in place with each layer digest (`manifest_ref`) and the
manifest digest (`volume_ref`) and returned. When no blob was new and
`vol_name` already resolves, the existing manifest digest is kept. Without
`store_root`, the store at `oci_store_path()` is used.

```python
from sori.volume import generate_volume_index, publish_volume, validate_volume_dir

raw_config = validate_volume_dir("/data/GRCh38")
index = generate_volume_index("/data/GRCh38", "GRCh38 reference")
index = publish_volume(index, "/data/GRCh38", "grch38-v1", raw_config, "/srv/sori/oci")
index.save_to_file("/data/GRCh38")   # writes volume-index.json
```

## The volume collection

`CollectionManager(root_dir, *initial, store_root=None)` loads
`volume-collection.json` from `root_dir`, or creates it at version 1 from the
given entries. All its methods are thread-safe.

```python
from sori.collection import CollectionManager

manager = CollectionManager("/srv/sori", store_root="/srv/sori/oci")
entry = manager.publish_volume_from_dir("/data/GRCh38", "GRCh38 reference", "grch38-v1")

same = manager.get(entry.index.volume_ref)   # a copy, or None if unknown
snapshot = manager.get_snapshot()            # an independent VolumeCollection
print(snapshot.to_dict())
```

- `publish_volume_from_dir(vol_dir, display_name, tag)` validates, indexes and
  publishes the directory, records the entry (with `configblob.json` as its
  `config_blob`) and returns it.
- `add_or_update(entry)` adds an entry or replaces the one with the same
  `volume_ref`; nothing is written when the entry is unchanged.
- `remove(ref)` returns whether an entry was removed; the last entry takes the
  removed one's place.
- `flush()` writes the collection to disk.

Every change raises the version by one and saves the file.

`VolumeCollection` can also be used on its own:

```python
from sori.collection import load_or_new_collection

coll = load_or_new_collection("/srv/sori")
coll.has_volume(index)   # True if the display name or the volume ref is already present
coll.merge(other)        # appends entries not present; True if any were added
coll.add_volume(entry)   # appends and bumps the version
coll.remove_volume(0)    # raises IndexError when out of range
```

## The OCI layout store

`OCILayoutStore(root)` keeps blobs under `blobs/<algorithm>/<hex>` and tagged
manifests in `index.json`, creating the layout when it is missing. It offers
`exists`, `push` (checks size and digest; raises `FileExistsError` for a stored
blob), `fetch` (returns an open binary file), `resolve` (by tag or manifest
digest), `tag` and `pack_manifest`. Missing blobs and references raise
`NotFoundError`.

## Fetching a volume

```python
from sori.fetch import fetch_vol_parallel, fetch_vol_seq

index = fetch_vol_seq("/restore/GRCh38", "/srv/sori/oci", "grch38-v1")
index = fetch_vol_parallel("/restore/GRCh38", "/srv/sori/oci", "grch38-v1", 4)
```

Each layer is extracted into `<dest>/<partition path>`, and the rebuilt index is
written to `volume-index.json` under the destination. Every layer must carry an
`org.example.partitionPath` annotation and no two layers may share a path,
otherwise `ValueError` is raised. `fetch_vol_parallel` checks all annotations
before extracting; a concurrency outside 1 to the number of layers means the
smaller of the CPU count and the layer count.

`publish_volume` does not write that annotation on its layers, so artifacts it
produces cannot be fetched back with these functions.

## Pushing to a registry

```python
from sori.remote import push_local_to_remote

password = "password"
digest = push_local_to_remote(
    "/srv/sori/oci",
    "grch38-v1",
    "harbor.example.com/project/volumes",
    "user",
    password=password,
    plain_http=False,
)
```

The tagged manifest, its config and its layers (or, for an index, each child
manifest) are uploaded over HTTPS, or plain HTTP when `plain_http` is true.
Blobs the registry already has are skipped. Basic and Bearer authentication
challenges are answered with the given credentials. The manifest digest is
printed and returned; any failure raises `RegistryError`.

## Archives

`tar_gz_dir(fs_dir, prefix_path)` returns the bytes of a deterministic
gzip-compressed tarball: sorted entries named under `prefix_path`, zeroed owners
and timestamps, and a fixed gzip header, so the same tree always gives the same
digest. `untar_gz_dir(stream, dest)` extracts directories, regular files and
symbolic links from such a stream and skips other entry types.