# buildxkit

Building blocks for managing BuildKit builder instances:

- a registry of builder drivers
- the drivers themselves
- Kubernetes deployment manifests for BuildKit pods
- pod selection
- helpers that turn build options into exporter, cache and attestation settings

The package has no runtime dependencies outside the standard library.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Drivers

Four driver factories are provided:

| Module                       | Factory                  | Name               | Instances |
|------------------------------|--------------------------|--------------------|-----------|
| `buildxkit.docker_driver`    | `DockerFactory`          | `docker`           | no        |
| `buildxkit.docker_container` | `DockerContainerFactory` | `docker-container` | yes       |
| `buildxkit.kubernetes`       | `KubernetesFactory`      | `kubernetes`       | yes       |
| `buildxkit.remote_driver`    | `RemoteFactory`          | `remote`           | yes       |

Importing one of these modules registers its factory with the shared
default registry in `buildxkit.manager`. The module-level functions
`register`, `get_factory`, `get_factories`, `get_default_factory` and
`get_driver` work on that shared registry. You can also keep your own
`Registry`:

```python
from buildxkit.manager import Registry
from buildxkit.docker_container import DockerContainerFactory
from buildxkit.remote_driver import RemoteFactory

registry = Registry()
registry.register(DockerContainerFactory())
registry.register(RemoteFactory())

names = [f.name() for f in registry.get_factories(instance_required=True)]
factory = registry.get_factory("remote", instance_required=True)
```

### Looking up and creating drivers

- `Registry.get_default_factory(endpoint, api, instance_required)` returns the
  factory with the lowest `priority(endpoint, api)`.
- `get_factory` raises `LookupError` for an unknown name. It raises
  `ValueError` when an instance is required but the factory does not allow
  instances.
- `Registry.get_driver(...)` builds an `InitConfig` and creates the driver.
  If no factory is given, it uses the default factory. The driver comes back
  wrapped in a `CachedDriver`, whose `client()` is created at most once; a
  failure is remembered and raised again on later calls.
- Each factory's `new(cfg)` checks `cfg.driver_opts`. An unknown or
  malformed option raises `ValueError`.

### Driver interface

`buildxkit.driver` defines the following:

- The abstract `Driver` interface, with these methods: `factory`,
  `bootstrap`, `info`, `version`, `stop`, `rm`, `client`, `features`,
  `is_moby_driver` and `config`.
- `Status` and `Feature`.
- `Info`.
- The errors `DriverNotRunning` and `DriverNotConnecting`.
- The default images `DEFAULT_IMAGE`, `QEMU_IMAGE` and
  `DEFAULT_ROOTLESS_IMAGE`.

`boot(driver, logger)` gets a client from a driver. If the driver is not
running, it bootstraps it first. If the client fails with
`DriverNotRunning`, `boot` tries again, up to two attempts in all, and
otherwise raises.

### What the drivers talk to

The drivers do not contain a Docker or Kubernetes client. Instead, each one
calls methods on the objects passed in through `InitConfig`:

- **`docker` and `docker-container`** call methods on `docker_api`, such as
  `container_inspect`, `exec_create` and `dial_hijack`. Each module's
  docstring lists the methods it needs.
- **`kubernetes`** needs a `kube_client_config` that provides `namespace()`
  and `clientset()`. The clientset provides `deployments(ns)`, `pods(ns)`,
  `config_maps(ns)` and `exec_conn(...)`.
- **`remote`** opens a plain or TLS socket to a `tcp://` or `unix://`
  endpoint by default. A different `connect(address, tls_options)` callable
  can be passed to `RemoteFactory`.

`client()` returns whatever connection these objects give. For
`docker-container`, that connection is wrapped so that reads return only the
stdout part of the exec stream.

### Driver options

The `docker-container` driver accepts these options:

- `network`; the value `host` also adds the host-network entitlement flag.
- `image`
- `cgroup-parent`
- `env.NAME`

The `remote` driver accepts TLS options. Giving any of them enables TLS:

- `servername`
- `cacert`, `cert` and `key`, which must be absolute paths.

With TLS enabled, `cacert` is required, and `cert` and `key` must be given
together. When no server name is given, the endpoint's host name is used.

The `docker` driver accepts no config files.

## Endpoints

```python
from buildxkit.endpoint import is_valid_endpoint, validate_endpoint

is_valid_endpoint("tcp://buildkitd:1234")   # True
validate_endpoint("http://nope")            # raises InvalidEndpointError
```

The accepted schemes are `tcp`, `unix`, `ssh`, `docker-container` and
`kube-pod`.

## Kubernetes

`KubernetesFactory.process_driver_opts(deployment_name, namespace, cfg)`
turns driver options into three things: a `DeploymentOpt`, a `Loadbalance`
mode and a namespace. It handles these options:

- `image`
- `namespace`
- `replicas`
- `requests.cpu`, `requests.memory`, `limits.cpu`, `limits.memory`
- `rootless`
- `nodeselector`
- `tolerations`
- `loadbalance`, which is `sticky` by default or `random`
- `qemu.install`
- `qemu.image`

Setting `rootless` without `image` switches to the rootless image.

`buildx_name_to_deployment_name("buildx_buildkit_loving_mendeleev0")`
returns `"loving-mendeleev0"`.

`buildxkit.manifest.new_deployment(opt)` returns the Deployment and its
ConfigMaps as plain dictionaries. Some helpers go with it:

- `split_config_files` groups config files by directory.
- `parse_quantity` parses resource quantities such as `100m` or `32Mi`
  into a `Decimal`.

In `buildxkit.podchooser`:

- `StickyPodChooser` uses a consistent `HashRing`, so that while the set of
  running pods stays the same, a key keeps mapping to the same pod.
- `RandomPodChooser` picks one of the running pods at random.
- `list_running_pods` returns the running pods sorted by name.

## Build options

`buildxkit.buildopts` provides three helpers:

- `create_attestations(attests)` keeps the first `Attest` for each type. A
  disabled type maps to `None`.
- `create_caches(entries)` returns copies of the `CacheOptionsEntry` values,
  so the result shares no state with the input.
- `create_exports(entries)` turns `ExportEntry` values into `Exporter`
  values.
  - It maps `registry` to the `image` exporter.
  - It checks whether the destination is a directory or a file. The `local`
    exporter writes to a directory, and `tar` writes to a file. `oci` and
    `docker` write to a file unless `tar` is false.
  - It opens destination files for writing.
  - Without a destination, output goes to standard output, but it refuses
    when standard output is a terminal.
  - It raises `ExportError` on invalid input.

## What this package does not do

There is no command-line tool.

The package contains no BuildKit client, and it does not run builds. It
also contains no Docker or Kubernetes API client. Drivers rely on the API
objects you supply.