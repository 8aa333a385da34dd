"""
Resource naming utilities for object store children.

Centralized functions for generating consistent identifiers across:
- PVC, Service and Deployment names
- Label selectors used to find gateway pods
- Multisite Job and realm token Secret names
- CLI flags passed to the radosgw tools

Every name is derived from the ObjectStore name AND namespace so that
concurrent reconciles of different objects never share a child resource.
"""

import hashlib
from typing import Dict

APP_NAME = "rgw"
OWNER_LABEL_KEY = "object_store"


def instance_name(name: str, namespace: str) -> str:
    """
    Get the shared name of the PVC, Service and Deployment of an ObjectStore.

    Examples:
        >>> instance_name("store", "east")
        "rgw-store-east"
    """
    return f"{APP_NAME}-{name}-{namespace}"


def zone_name(name: str, namespace: str) -> str:
    """Zone name advertised by a joining site."""
    return f"{name}-{namespace}"


def zone_job_name(name: str, namespace: str) -> str:
    """Name of the one-shot Job running zone create for a joining site."""
    return f"{instance_name(name, namespace)}-zone-job"


def realm_token_secret_name(name: str, namespace: str) -> str:
    """Name of the Secret an origin site publishes its realm token in."""
    return f"{instance_name(name, namespace)}-realm-token"


def get_labels(name: str) -> Dict[str, str]:
    return {OWNER_LABEL_KEY: name}


def get_label_selector(name: str) -> str:
    """Label selector string matching the pods of an ObjectStore."""
    return ",".join(f"{key}={value}" for key, value in get_labels(name).items())


def stable_hash(value: str) -> str:
    """
    Compute a stable pseudorandom string from the given seed.

    Used as the gateway daemon id, which must fit in a socket path.
    Do NOT change the output of this function: existing gateways would come
    back with a different identity after an operator upgrade.
    """
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return digest[:16].hex()


def normalize_key(key: str) -> str:
    """
    Convert a ceph config key in any format to the underscore form.

    Ceph accepts "some config key", "some_config_key" and "some-config-key"
    for the same option.
    """
    return key.replace(" ", "_").replace("-", "_")


def new_flag(key: str, value: str) -> str:
    """
    Format a key/value pair as a ceph command line flag.

    Examples:
        >>> new_flag("debug rgw", "15")
        "--debug-rgw=15"
    """
    flag = normalize_key(key).replace("_", "-")
    return f"--{flag}={value}"


def container_env_var_reference(env_var_name: str) -> str:
    """Reference to a container env var usable in command or args fields."""
    return f"$({env_var_name})"
