"""
Declarative remediation actions.

Each ActionKind maps to a pure function that takes a resource's property
document and the action's parameters and returns the new document plus a
one-line description of the change. Handlers never perform I/O; the path
resolver does the read and the write around them.

Property names follow the AWS CloudFormation schema where one exists
(``BucketEncryption``, ``LoggingConfiguration``) and fall back to the
keys given in the action parameters otherwise, so the same action can
target different resource types.

Usage:
    from controlfix.actions import apply_action

    new_props, change = apply_action(action, current_props)
"""

import copy
from collections.abc import Callable
from typing import Any

from controlfix.errors import UnsupportedActionError
from controlfix.models import ActionKind, RemediationAction

Properties = dict[str, Any]
ActionHandler = Callable[[Properties, dict[str, Any]], tuple[Properties, str]]


def apply_policy(properties: Properties, params: dict[str, Any]) -> tuple[Properties, str]:
    """Attach a policy reference to the resource's policy list."""
    policy = params.get("policy_arn") or params.get("policy_id")
    if not policy:
        raise ValueError("apply_policy requires a 'policy_arn' or 'policy_id' parameter")
    key = params.get("property", "ManagedPolicyArns")
    policies = list(properties.get(key) or [])
    if policy in policies:
        return properties, f"Policy {policy} already attached"
    policies.append(policy)
    properties[key] = policies
    return properties, f"Attached policy {policy}"


def enable_encryption(properties: Properties, params: dict[str, Any]) -> tuple[Properties, str]:
    """Turn on server-side encryption, optionally with a customer-managed key."""
    algorithm = params.get("algorithm", "aws:kms" if params.get("kms_key_id") else "AES256")
    default = {"SSEAlgorithm": algorithm}
    if params.get("kms_key_id"):
        default["KMSMasterKeyID"] = params["kms_key_id"]
    properties["BucketEncryption"] = {
        "ServerSideEncryptionConfiguration": [
            {"ServerSideEncryptionByDefault": default, "BucketKeyEnabled": True}
        ]
    }
    return properties, f"Enabled {algorithm} encryption at rest"


def enforce_minimum_tls(properties: Properties, params: dict[str, Any]) -> tuple[Properties, str]:
    """Raise the minimum accepted TLS version."""
    version = str(params.get("minimum_version", "1.2"))
    key = params.get("property", "MinimumTlsVersion")
    previous = properties.get(key)
    properties[key] = version
    return properties, f"Set {key} from {previous or 'unset'} to {version}"


def configure_diagnostic_logging(
    properties: Properties,
    params: dict[str, Any],
) -> tuple[Properties, str]:
    """Send access or diagnostic logs to a destination."""
    destination = params.get("destination") or params.get("log_bucket")
    if not destination:
        raise ValueError("configure_diagnostic_logging requires a 'destination' parameter")
    logging_config: dict[str, Any] = {"DestinationBucketName": destination}
    if params.get("prefix"):
        logging_config["LogFilePrefix"] = params["prefix"]
    properties["LoggingConfiguration"] = logging_config
    return properties, f"Enabled diagnostic logging to {destination}"


def configure_network_rule(
    properties: Properties,
    params: dict[str, Any],
) -> tuple[Properties, str]:
    """
    Restrict inbound network access.

    Removes ingress rules open to the whole internet and, when
    ``allowed_cidrs`` is given, keeps only rules whose source is listed.
    """
    allowed = set(params.get("allowed_cidrs") or [])
    rules = list(properties.get("SecurityGroupIngress") or [])
    kept = []
    for rule in rules:
        source = rule.get("CidrIp") or rule.get("CidrIpv6")
        if source in ("0.0.0.0/0", "::/0"):
            continue
        if allowed and source is not None and source not in allowed:
            continue
        kept.append(rule)
    properties["SecurityGroupIngress"] = kept
    removed = len(rules) - len(kept)
    return properties, f"Removed {removed} ingress rule(s) outside the allowed sources"


ACTION_HANDLERS: dict[ActionKind, ActionHandler] = {
    ActionKind.APPLY_POLICY: apply_policy,
    ActionKind.ENABLE_ENCRYPTION: enable_encryption,
    ActionKind.ENFORCE_MINIMUM_TLS: enforce_minimum_tls,
    ActionKind.CONFIGURE_DIAGNOSTIC_LOGGING: configure_diagnostic_logging,
    ActionKind.CONFIGURE_NETWORK_RULE: configure_network_rule,
}

_unhandled = set(ActionKind) - set(ACTION_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Action kinds without a handler: {sorted(k.value for k in _unhandled)}")


def apply_action(action: RemediationAction, properties: Properties) -> tuple[Properties, str]:
    """
    Apply one declarative action to a copy of ``properties``.

    Args:
        action: Action to apply
        properties: Current property document (left unchanged)

    Returns:
        Tuple of (new property document, change description)

    Raises:
        UnsupportedActionError: If no handler is registered for the action kind
        ValueError: If the action is missing a required parameter
    """
    handler = ACTION_HANDLERS.get(action.action_type)
    if handler is None:
        raise UnsupportedActionError(str(action.action_type))
    return handler(copy.deepcopy(properties), dict(action.parameters))
