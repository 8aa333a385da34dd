"""
RGW command line grammar and output parsers.

Two tool families are wrapped:
- The daemon (radosgw-sqlite) launched by the gateway container
- The admin tools (radosgw-admin-sqlite, rgwam-sqlite) invoked remotely
  through the executor to drive the multisite handshake

Expected output grammar (version 1):
- ``realm list`` prints a single JSON document ``{"realms": [<name>, ...]}``
- ``realm bootstrap`` prints, among log lines, exactly one line
  ``Realm Token: <base64 token>``

Any deviation is reported as a ProtocolError so the reconcile pass fails
loudly instead of publishing a bad token.
"""

import base64
import binascii
import json
import re
from typing import List, Optional

from ..config import GatewayDefaults
from ..utils.resource_naming import new_flag

OUTPUT_GRAMMAR_VERSION = 1

REALM_TOKEN_PATTERN = re.compile(r"^Realm Token: (\S+)$")


class ProtocolError(Exception):
    """Output of a wrapped CLI tool did not match the expected grammar."""


class RealmListParseError(ProtocolError):
    pass


class RealmTokenParseError(ProtocolError):
    pass


class InvalidRealmTokenError(ProtocolError):
    pass


# =============================================================================
# Flags
# =============================================================================

def default_flags(defaults: GatewayDefaults) -> List[str]:
    """Flags shared by the daemon and the admin CLI."""
    return [
        # There is no ceph cluster to fetch config from
        "--no-mon-config",
        new_flag("librados sqlite data dir", defaults.data_directory),
        # Disable cephx
        new_flag("auth-client-required", "none"),
        new_flag("auth-service-required", "none"),
        new_flag("auth-cluster-required", "none"),
        new_flag("conf", defaults.ceph_conf_path),
    ]


def daemon_flags(defaults: GatewayDefaults) -> List[str]:
    return [
        # Log to stdout
        "-d",
        "--nolockdep",
    ] + default_flags(defaults)


def build_admin_args(defaults: GatewayDefaults, args: List[str]) -> List[str]:
    return default_flags(defaults) + list(args)


def ceph_args_env(defaults: GatewayDefaults) -> str:
    """
    CEPH_ARGS value for containers running rgwam-sqlite.

    rgwam-sqlite rejects the data dir flags on its command line, so they are
    passed through the environment instead.
    """
    return " ".join([
        new_flag("librados sqlite data dir", defaults.data_directory),
        "--no-mon-config",
        new_flag("conf", defaults.ceph_conf_path),
    ])


# =============================================================================
# Commands
# =============================================================================

def endpoint_url(address: str, port: int) -> str:
    return f"http://{address}:{port}"


def realm_list_command(defaults: GatewayDefaults) -> List[str]:
    return [defaults.admin_binary] + build_admin_args(defaults, ["realm", "list"])


def realm_bootstrap_command(
    defaults: GatewayDefaults,
    endpoint: str,
    realm: Optional[str] = None
) -> List[str]:
    args = [defaults.multisite_binary, "realm", "bootstrap"]
    if realm:
        args.append(f"--realm={realm}")
    args.append(f"--endpoints={endpoint}")
    return args


def zone_create_args(token: str, endpoint: str, zone: Optional[str] = None) -> List[str]:
    args = ["zone", "create"]
    if zone:
        args.append(f"--zone={zone}")
    args.append(f"--realm-token={token}")
    args.append(f"--endpoints={endpoint}")
    return args


def zone_create_command(
    defaults: GatewayDefaults,
    token: str,
    endpoint: str,
    zone: Optional[str] = None
) -> List[str]:
    return [defaults.multisite_binary] + zone_create_args(token, endpoint, zone)


def redact_command(command: List[str]) -> List[str]:
    """Hide realm tokens before a command is logged."""
    redacted = []
    for arg in command:
        if arg.startswith("--realm-token=") and not arg.startswith("--realm-token=$("):
            redacted.append("--realm-token=<redacted>")
        else:
            redacted.append(arg)
    return redacted


# =============================================================================
# Output parsers
# =============================================================================

def parse_realm_list(output: str) -> List[str]:
    """
    Parse the JSON printed by ``realm list``.

    Raises:
        RealmListParseError: If the output is not a JSON object with a
            ``realms`` list of strings
    """
    try:
        document = json.loads(output)
    except (TypeError, ValueError) as e:
        raise RealmListParseError(f"failed to unmarshal realms from {output!r}: {e}") from e

    if not isinstance(document, dict):
        raise RealmListParseError(f"expected a JSON object from realm list, got {output!r}")

    realms = document.get("realms")
    if realms is None:
        return []
    if not isinstance(realms, list) or not all(isinstance(r, str) for r in realms):
        raise RealmListParseError(f"unexpected realms value in realm list output: {realms!r}")
    return realms


def is_base64_encoded(value: str) -> bool:
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


def parse_realm_token(output: str) -> str:
    """
    Extract the realm token from ``realm bootstrap`` output.

    Raises:
        RealmTokenParseError: If there is not exactly one token line
        InvalidRealmTokenError: If the token is not valid base64
    """
    tokens = []
    for line in output.splitlines():
        match = REALM_TOKEN_PATTERN.match(line.strip())
        if match:
            tokens.append(match.group(1))

    if len(tokens) != 1:
        raise RealmTokenParseError(
            f"expected exactly one 'Realm Token: <token>' line, found {len(tokens)} in output: {output!r}"
        )

    token = tokens[0]
    if not is_base64_encoded(token):
        raise InvalidRealmTokenError("realm token printed by realm bootstrap is not valid base64")
    return token
