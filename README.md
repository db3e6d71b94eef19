# csiaddons

Building blocks for a CSI-Addons sidecar. The sidecar runs next to a CSI
driver and offers the driver's extra operations over gRPC: reclaiming
space, fencing cluster networks and replicating volumes.

## Installation

    pip install csiaddons

To run the tests as well:

    pip install "csiaddons[test]"
    pytest

## Running the sidecar

    csi-addons-sidecar --node-id worker-1 --controller-port 9070 \
        --pod "$POD_NAME" --namespace "$POD_NAMESPACE" --pod-uid "$POD_UID"

Every option can be given with one dash or two (`-pod` or `--pod`):

- `--csi-addons-address`: the socket of the CSI driver. The default is
  `/run/csi-addons/socket`.
- `--timeout`: how long to wait for a reply from the driver, as a duration
  such as `90s` or `1h30m`. The default is `3m`.
- `--stagingpath`: the kubelet staging directory. The default is
  `/var/lib/kubelet/plugins/kubernetes.io/csi/`.
- `--controller-ip` and `--controller-port`: where the sidecar's gRPC server
  listens. Without an IP address the sidecar listens on all addresses and
  advertises itself as `pod://<pod>.<namespace>:<port>`.
- `--pod`, `--namespace` and `--pod-uid`: identify the Pod that holds the
  sidecar.
- `--node-id`: the node the sidecar runs on.
- `--version`: prints version details and exits.

At start-up the sidecar:

1. connects to the driver and probes it until it reports ready (timeouts are
   retried once a second, other errors stop the sidecar);
2. reads the in-cluster service account configuration;
3. registers a `CSIAddonsNode` object that points to its endpoint, retrying
   failed attempts until a time limit runs out (an object that already
   exists is left as it is);
4. serves the identity, reclaim-space, network-fence and replication
   services until stopped.

Any failure during start-up is logged and the command exits with status 1.

## Library use

Endpoint helpers (`csiaddons.endpoint`):

```python
from csiaddons.endpoint import build_endpoint_url, validate_controller_endpoint

validate_controller_endpoint("192.168.61.228", "8080")  # "192.168.61.228:8080"
build_endpoint_url("", "8080", "my-pod", "ns")          # "pod://my-pod.ns:8080"
```

Both raise `InvalidEndpointError` when the address or the port is invalid.
IPv6 addresses are put in brackets.

Controller settings (`csiaddons.config`) come from the `csi-addons-config`
ConfigMap:

```python
from csiaddons.config import Config

cfg = Config()
cfg.read_config({"reclaim-space-timeout": "10m", "max-concurrent-reconciles": "5"})
```

`Config.read_config_map(kube_client)` reads the ConfigMap from the
configured namespace and ignores it when it does not exist. An unknown key
raises an error, and so does a value that does not parse. `parse_duration`
turns text such as `"1h30m"` or `"300ms"` into a `timedelta`.

Other pieces:

- `csiaddons.kube`: `KubeClient`, a small JSON client for the Kubernetes
  API (`KubeClient.in_cluster()` uses the Pod's service account), and
  `get_secret`, which returns the decoded data of a Secret.
- `csiaddons.connection`: `Connection` and `ConnectionPool`, which keeps
  sidecar connections and looks them up by driver name and, optionally,
  node ID. Replacing or deleting an entry closes the old connection.
- `csiaddons.replication_client`: `ReplicationClient` sends replication
  requests through a stub, each within a time limit;
  `FakeReplicationClient` answers them with functions given to it.
- `csiaddons.driver_client`: `DriverClient` probes the driver and asks its
  name.
- `csiaddons.node`: `Manager` builds and creates the `CSIAddonsNode`.
- `csiaddons.server`: `SidecarServer` runs the registered services on one
  gRPC server.
- `csiaddons.service`: `IdentityServer`, `ReclaimSpaceServer`,
  `NetworkFenceServer` and `ReplicationServer`, which fetch secrets and
  volume details from the cluster and forward the calls to the driver.
- `csiaddons.errors`: `StatusError`, `get_error_message` and
  `is_unimplemented_error` for gRPC status errors.
- `csiaddons.strings`: `contains_in_slice` and `remove_from_slice`.

## What this package does not do

- Messages on the gRPC services, both those the sidecar serves and those it
  sends to the driver, are encoded as JSON objects, not as protocol buffer
  messages. Peers must use the same encoding.
- There is no controller: nothing here watches `CSIAddonsNode` objects or
  other custom resources, and no resource definitions are shipped. The
  package covers the sidecar side and a few helpers a controller could use.
- The version command prints empty version and commit fields unless they
  are set in `csiaddons.version`.