"""Generate Kubernetes V1Pod objects for devnet nodes."""

from __future__ import annotations

import re
from typing import Dict, List, Optional
from kubernetes.client import (
    V1Pod,
    V1ObjectMeta,
    V1PodSpec,
    V1Container,
    V1ContainerPort,
    V1EnvVar,
    V1HostPathVolumeSource,
    V1Volume,
    V1VolumeMount,
)

NODE_HOME_MOUNT = "/devnet/node"


def pod_name_for(chain_id: str, index: int) -> str:
    """DNS-1123 compliant pod name for node ``index`` of a devnet."""
    base = re.sub(r"[^a-z0-9-]+", "-", chain_id.lower()).strip("-") or "devnet"
    return f"{base[:50]}-node{index}"


def _container_ports(ports: Dict[str, int]) -> List[V1ContainerPort]:
    return [
        V1ContainerPort(name=name.replace("_", "-")[:15], container_port=port)
        for name, port in sorted(ports.items())
        if port
    ]


def generate_pod_for_node(
    chain_id: str,
    index: int,
    image: str,
    command: List[str],
    host_home_dir: str,
    ports: Dict[str, int],
    namespace: str = "devnet",
    env: Optional[Dict[str, str]] = None,
) -> V1Pod:
    """
    Generate a V1Pod that runs one validator node.

    The node home directory on the host is mounted into the container and the
    pod uses host networking, so the node's RPC port is reachable on the host
    just like a local process.

    Args:
        chain_id: Devnet chain id (used for naming and labels)
        index: Node index within the devnet
        image: Container image holding the node binary
        command: Full container command; occurrences of host_home_dir are
            rewritten to the in-container mount path
        host_home_dir: Node home directory on the host
        ports: Named ports the node listens on
        namespace: Kubernetes namespace
        env: Extra environment variables

    Returns:
        V1Pod object ready for creation
    """
    pod_name = pod_name_for(chain_id, index)
    container_command = [arg.replace(host_home_dir, NODE_HOME_MOUNT) for arg in command]

    env_vars = [
        V1EnvVar(name="DEVNET_CHAIN_ID", value=chain_id),
        V1EnvVar(name="DEVNET_NODE_INDEX", value=str(index)),
    ] + [V1EnvVar(name=k, value=v) for k, v in sorted((env or {}).items())]

    container = V1Container(
        name="node",
        image=image,
        image_pull_policy="IfNotPresent",
        command=container_command,
        env=env_vars,
        ports=_container_ports(ports),
        volume_mounts=[V1VolumeMount(name="node-home", mount_path=NODE_HOME_MOUNT)],
    )

    pod_spec = V1PodSpec(
        containers=[container],
        host_network=True,
        restart_policy="Never",
        volumes=[
            V1Volume(
                name="node-home",
                host_path=V1HostPathVolumeSource(path=host_home_dir, type="DirectoryOrCreate"),
            )
        ],
    )

    pod_metadata = V1ObjectMeta(
        name=pod_name,
        namespace=namespace,
        labels={
            "devnet.chain_id": re.sub(r"[^A-Za-z0-9_.-]+", "-", chain_id)[:63],
            "devnet.node_index": str(index),
            "app": "devnet-node",
        },
    )

    return V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=pod_metadata,
        spec=pod_spec,
    )
